"""Run the CLI with python -m basehub."""

from basehub.cli import main

main()
