# sessionledger/__main__.py
from sessionledger.cli.main import app

if __name__ == "__main__":
    app()
