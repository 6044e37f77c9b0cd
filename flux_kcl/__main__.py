"""Run the flux-kcl command line tool."""

from flux_kcl.tool.flux_kcl import main

if __name__ == "__main__":
    main()
