"""Flux reconciler reconcile action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    ArgumentTypeError,
    _SubParsersAction as SubParsersAction,
)
from datetime import timedelta
from typing import cast

import yaml

from flux_reconciler.config import KustomizationControllerConfig, OrchestratorConfig
from flux_reconciler.exceptions import InputException
from flux_reconciler.manifest import parse_duration
from flux_reconciler.orchestrator import BootstrapOptions, Orchestrator
from flux_reconciler.store import InMemoryStore
from flux_reconciler.task import task_service_context

_LOGGER = logging.getLogger(__name__)

# Backoff while a dependency is not ready
LOCAL_DEPENDENCY_REQUEUE = timedelta(seconds=1)


def _duration(value: str) -> timedelta:
    try:
        return parse_duration(value)  # type: ignore[return-value]
    except InputException as err:
        raise ArgumentTypeError(str(err)) from err


class ReconcileAction:
    """Flux-reconciler reconcile action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile Kustomizations against an in memory cluster",
                description=(
                    "Load Kustomizations, ConfigMaps and Secrets from a path, "
                    "reconcile them once against an in memory cluster and print "
                    "the resulting status of every Kustomization."
                ),
            ),
        )
        args.add_argument(
            "path",
            help="Path to the Kustomization, ConfigMap and Secret resources",
            type=pathlib.Path,
        )
        args.add_argument(
            "--source-path",
            help="Root of the source artifact, defaults to the resource path",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--revision",
            help="Revision reported for the source artifact",
            default="local",
        )
        args.add_argument(
            "--timeout",
            help="How long to wait for all Kustomizations to settle e.g. 5m",
            type=_duration,
            default=timedelta(minutes=5),
        )
        args.add_argument(
            "--strict-substitution",
            help="Fail when a variable has no value and no default",
            action="store_true",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        source_path: pathlib.Path | None,
        revision: str,
        timeout: timedelta,
        strict_substitution: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> bool:
        """Async Action implementation."""
        store = InMemoryStore()
        config = OrchestratorConfig(
            kustomization_controller_config=KustomizationControllerConfig(
                dependency_requeue_interval=LOCAL_DEPENDENCY_REQUEUE,
                strict_substitution=strict_substitution,
            ),
            wait_timeout=timeout,
        )
        async with task_service_context() as task_service:
            orchestrator = Orchestrator(store, config, task_service=task_service)
            ok = await orchestrator.bootstrap(
                BootstrapOptions(path=path, source_path=source_path, revision=revision)
            )

        docs = [ks.to_doc() for ks in store.kustomizations()]
        print(yaml.safe_dump_all(docs, sort_keys=False, explicit_start=True), end="")
        return ok
