#!/usr/bin/env python3
import os

import uvicorn

from reportql.app import create_app

app = create_app()


if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload_enabled = os.getenv("REPORTQL_DEV_MODE", "false").lower() == "true"

    print(f"Starting reportql on {host}:{port}")
    uvicorn.run("main:app", host=host, port=port, reload=reload_enabled)
