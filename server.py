"""Ouroboros orchestrator server entry point."""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()

if __name__ == "__main__":
    # 127.0.0.1 for local development; 0.0.0.0 exposes the API to the network
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "false").lower() == "true"

    print(f"Starting Ouroboros orchestrator on {host}:{port}")
    uvicorn.run("ouroboros.main:app", host=host, port=port, reload=debug)
