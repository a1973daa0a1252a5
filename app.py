# app.py — Carbon credit registry: Flask + Mongo + on-chain registry contract
# Run:
#   pip install -e .
#   export MONGODB_URI="mongodb://localhost:27017"
#   export DB_NAME="carbon_registry"
#   python app.py
#
# Optional (for the on-chain ledger; without these the dry-run ledger is used):
#   export WEB3_RPC_URL="https://sepolia.infura.io/v3/<KEY>"
#   export PRIVATE_KEY="0x..."                      # registrar key
#   export REGISTRY_CONTRACT_ADDRESS="0x..."        # see registry_deploy.py
#
# API base: http://127.0.0.1:5000/api/v1
import os

import structlog

from carbon_registry.api import create_app
from carbon_registry.config import Settings
from carbon_registry.log import configure_logging

settings = Settings.from_env()
configure_logging(settings.log_level, settings.log_format)
app = create_app(settings)


if __name__ == "__main__":
    services = app.extensions["carbon_registry"]
    services.sweeper.start()
    structlog.get_logger("app").info("registry_starting", db=settings.db_name, chain=settings.chain_name,
                                     ledger=type(services.ledger).__name__)
    try:
        app.run(host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "5000")), debug=False)
    finally:
        services.sweeper.stop()
        if services.executor is not None:
            services.executor.shutdown(wait=False)
