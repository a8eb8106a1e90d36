"""HTTP surface for the ad script service (FastAPI)."""
