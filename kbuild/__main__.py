"""Entry point for ``python -m kbuild``."""

from kbuild.cli import app

if __name__ == "__main__":
    app(prog_name="kbuild")
