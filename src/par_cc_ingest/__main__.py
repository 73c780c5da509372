"""Entry point for python -m par_cc_ingest."""

from .main import app

if __name__ == "__main__":
    app()
