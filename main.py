from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from container import Container
from dependencies import get_services
from logging_config import setup_logging
from routers import media, owners

setup_logging(debug=get_settings().debug)

app = FastAPI(title="media-pipeline")

origins = [
    "http://127.0.0.1:5500",
    "http://localhost:5500",
    "http://127.0.0.1:8000",
    "http://localhost:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(owners.router)
app.include_router(media.router)


@app.get("/health")
def health(services: Container = Depends(get_services)):
    scanners = {}
    for scanner_id in services.coordinator.guarded_ids():
        state = services.breaker.state(scanner_id)
        scanners[scanner_id] = {"open": state.is_open, "failures": state.failure_count}
    degraded = any(s["open"] for s in scanners.values())
    return {"status": "degraded" if degraded else "ok", "scanners": scanners}
