"""Module entrypoint: ``python -m vmctl``."""

from vmctl import cli

if __name__ == "__main__":
    raise SystemExit(cli.main())
