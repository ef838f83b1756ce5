import os
import sys

from dotenv import dotenv_values

from sealrelay.cli.main import cli

config = dotenv_values(".env")

# Prioritize environment variables over .env file
SEALRELAY_CONFIG = os.getenv("SEALRELAY_CONFIG", config.get("SEALRELAY_CONFIG", "config.toml"))

if __name__ == "__main__":
    args = sys.argv[1:] or ["run", "--config", SEALRELAY_CONFIG]
    cli(args)
