"""gpsrelay — offline-durable location sample relay.

Subpackages:
    tracking/ — Sample queue, OAuth upload client, retry scheduler, Tracker façade
    routers/  — FastAPI endpoints exposing the Tracker to a host
    models/   — Pydantic request/response schemas
"""
