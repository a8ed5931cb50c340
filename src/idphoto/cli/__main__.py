"""CLI entry point for idphoto.cli module.

Enables execution via: python -m idphoto.cli
"""

from idphoto.cli.recover_jobs import main

if __name__ == "__main__":
    raise SystemExit(main())
