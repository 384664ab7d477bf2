"""Decryption of encrypted values in rendered manifests.

Decryption providers are looked up by the `spec.decryption.provider` name in a
mapping that is built once and handed to the pipeline. The default mapping
contains the `sops` provider, which pipes each encrypted document through the
`sops` binary using the age keys stored in the Secret referenced by
`spec.decryption.secretRef`.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
import logging
from typing import Any

import yaml

from .command import Command, run
from .exceptions import CommandException, DecryptionException

__all__ = [
    "Decryptor",
    "SopsDecryptor",
    "default_decryptors",
]

_LOGGER = logging.getLogger(__name__)

SOPS_BIN = "sops"
SOPS_PROVIDER = "sops"

# Secret data keys holding age private keys end with this suffix
AGE_KEY_SUFFIX = ".agekey"


class Decryptor(ABC):
    """Decrypts the encrypted documents produced by the overlay build."""

    @abstractmethod
    def is_encrypted(self, doc: dict[str, Any]) -> bool:
        """Return True if the provider recognizes the document as encrypted."""

    @abstractmethod
    async def decrypt(
        self, doc: dict[str, Any], keys: Mapping[str, str]
    ) -> dict[str, Any]:
        """Return the decrypted document.

        Args:
            doc: The encrypted document.
            keys: Key material from the decryption secret, keyed by data key.

        Raises:
            DecryptionException: If the document could not be decrypted.
        """


class SopsDecryptor(Decryptor):
    """Decrypts documents encrypted with sops."""

    def __init__(self, sops_bin: str = SOPS_BIN) -> None:
        self._sops_bin = sops_bin

    def is_encrypted(self, doc: dict[str, Any]) -> bool:
        metadata = doc.get("sops")
        return isinstance(metadata, dict) and "mac" in metadata

    async def decrypt(
        self, doc: dict[str, Any], keys: Mapping[str, str]
    ) -> dict[str, Any]:
        age_keys = [
            value.strip() for key, value in keys.items() if key.endswith(AGE_KEY_SUFFIX)
        ]
        if not age_keys:
            raise DecryptionException("no age keys found in the decryption secret")
        cmd = Command(
            [
                self._sops_bin,
                "--decrypt",
                "--input-type",
                "yaml",
                "--output-type",
                "yaml",
                "/dev/stdin",
            ],
            env={"SOPS_AGE_KEY": "\n".join(age_keys)},
        )
        try:
            out = await run(cmd, stdin=yaml.dump(doc).encode("utf-8"))
        except CommandException as err:
            raise DecryptionException(str(err)) from err
        try:
            decrypted = yaml.safe_load(out)
        except yaml.YAMLError as err:
            raise DecryptionException(f"Unable to parse decrypted output: {err}") from err
        if not isinstance(decrypted, dict):
            raise DecryptionException("Decrypted output is not an object")
        return decrypted


def default_decryptors() -> dict[str, Decryptor]:
    """Return the decryption providers available by default."""
    return {SOPS_PROVIDER: SopsDecryptor()}
