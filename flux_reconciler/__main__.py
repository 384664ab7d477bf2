"""Run the flux-reconciler command line tool."""

from flux_reconciler.tool.flux_reconciler import main

if __name__ == "__main__":
    main()
