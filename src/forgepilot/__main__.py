"""Allow `python -m forgepilot` to launch the CLI."""

from forgepilot.main import cli

cli()
