from devicedeck.cli import cli

cli()
