"""Allow ``python -m AssetLedger.Deploy``."""

from AssetLedger.Deploy.cli import app

if __name__ == "__main__":  # pragma: no cover
    app()
