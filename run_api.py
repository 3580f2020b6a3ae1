#!/usr/bin/env python3
"""
Run the digitnet API server.

Expects DIGITNET_CONFIG (ensemble document) and DIGITNET_SCORERS
('module:REGISTRY' naming the leaf scorer registry) in the environment.
"""

import logging

import uvicorn

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "digitnet.api.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level="info",
    )
