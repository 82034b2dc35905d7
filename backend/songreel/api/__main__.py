"""API server entry point for python -m songreel.api"""
import logging

import uvicorn
from songreel.config import settings

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "songreel.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
