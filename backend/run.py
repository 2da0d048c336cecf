#!/usr/bin/env python3
# backend/run.py
"""
Development server runner for the booking engine.
For local development only - production runs uvicorn/gunicorn directly.
"""
import os

import uvicorn

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    print("Starting booking engine development server...")
    print(f"Access at: http://localhost:{port}")
    print(f"API Docs: http://localhost:{port}/docs")

    uvicorn.run("booking_engine.main:app", host=host, port=port, reload=True, log_level="info")
