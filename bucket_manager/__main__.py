"""Allow ``python -m bucket_manager``."""

from .cli import main

main()
