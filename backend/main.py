"""
Toronto Safety Backend — FastAPI
Modular entry point. All logic is split across:
  config.py, models.py, geo.py, normalizer.py, geocoding.py, data_fetchers.py, routes.py
"""

import logging

logging.basicConfig(level=logging.INFO)

from routes import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
