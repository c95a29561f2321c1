"""Allow `python -m onetap` as an alias for the `tap` command."""

from onetap.main import cli

if __name__ == "__main__":
    cli()
