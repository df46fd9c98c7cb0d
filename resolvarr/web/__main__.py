"""Serve the resolvarr API with uvicorn: python -m resolvarr.web"""

import logging
import os

import uvicorn

from .app import create_app


def main():
    level = str(os.environ.get("RESOLVARR_LOG_LEVEL", "INFO") or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = str(os.environ.get("RESOLVARR_HOST", "0.0.0.0") or "0.0.0.0")
    port = int(os.environ.get("RESOLVARR_PORT", "8787") or 8787)
    uvicorn.run(create_app(), host=host, port=port, log_level=level.lower())


if __name__ == "__main__":
    main()
