"""Allow ``python -m mdview``."""

from mdview.cli import main

main()
