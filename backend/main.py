import asyncio
import logging
import time
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from analysis.cache import InMemoryTTLCache
from analysis.structure_scorer import StructureScorer
from ingest.adapters import AdapterFactory, DataFetchError
from backend.config import load_config
from backend.orchestrator import UniverseScanner

# --- Configuration ---
config = load_config()

# --- Logging Setup ---
logging.basicConfig(
    level=getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

CACHE_PURGE_INTERVAL_SECONDS = 600


def build_scanner(app_config: Dict) -> UniverseScanner:
    """Wires the adapter factory, scorer and cache from config."""
    scoring = dict(app_config.get("scoring", {}))
    version = scoring.pop("api_version", "0.2")
    scorer = StructureScorer(scoring, version=version)
    return UniverseScanner(AdapterFactory(app_config), scorer, InMemoryTTLCache(), app_config)


# --- Global Variables ---
scanner = build_scanner(config)
cache_purge_task: Optional[asyncio.Task] = None

# Rate limiting store (in-memory for the backend process)
# Format: {ip_address: last_request_timestamp}
rate_limit_store: Dict[str, float] = {}
SYMBOL_RATE_LIMIT_SECONDS = config.get("symbol_rate_limit_seconds", 1)


# --- Request Models ---
class PrefilterRequest(BaseModel):
    symbol: Optional[str] = None
    timeframe: str = "1d"
    api_version: Optional[str] = None


class ScanRequest(BaseModel):
    symbols: Optional[List[str]] = None
    base_timeframe: str = "1d"
    top_n: Optional[int] = None
    include_fundamentals: bool = False


class PivotsRequest(BaseModel):
    symbol: Optional[str] = None
    timeframe: str = "1d"


# --- FastAPI App ---
app = FastAPI(title="Wave Structure Screener API")


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning(f"Bad request on {request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(DataFetchError)
async def data_fetch_error_handler(request: Request, exc: DataFetchError):
    logger.error(f"Upstream data error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


def get_scanner() -> UniverseScanner:
    return scanner


def get_rate_limit_seconds() -> float:
    """Returns the rate limit interval in seconds."""
    return SYMBOL_RATE_LIMIT_SECONDS


# --- Rate Limiting Dependency ---
async def rate_limit_dependency(request: Request, rate_limit_seconds: float = Depends(get_rate_limit_seconds)):
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()

    last_request_time = rate_limit_store.get(client_ip)

    if last_request_time is not None:
        time_since_last_request = current_time - last_request_time
        if time_since_last_request < rate_limit_seconds:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Please try again in {rate_limit_seconds - time_since_last_request:.2f} seconds."
            )

    rate_limit_store[client_ip] = current_time
    return True


# --- API Endpoints ---
@app.get("/health")
async def health():
    return {"status": "ok", "api_version": scanner.scorer.version}


@app.post("/prefilter")
async def prefilter(request: PrefilterRequest, universe_scanner: UniverseScanner = Depends(get_scanner)):
    """Scores one symbol and returns its ScoreBundle."""
    if not request.symbol:
        raise HTTPException(status_code=400, detail="symbol required")
    logger.info(f"Prefilter request for {request.symbol} ({request.timeframe})")
    bundle = await universe_scanner.prefilter(request.symbol, request.timeframe, request.api_version)
    return bundle.to_dict()


@app.post("/scan")
async def scan(request: ScanRequest,
               universe_scanner: UniverseScanner = Depends(get_scanner),
               rate_limit_ok: bool = Depends(rate_limit_dependency)):
    """
    Screens a symbol universe and returns the ranked ScanResult.
    Rate limited per client IP.
    """
    if not request.symbols:
        raise HTTPException(status_code=400, detail="symbols array required")
    result = await universe_scanner.scan(
        request.symbols, request.base_timeframe, request.top_n, include_fundamentals=request.include_fundamentals
    )
    return result.to_dict()


@app.post("/pivots")
async def pivots(request: PivotsRequest, universe_scanner: UniverseScanner = Depends(get_scanner)):
    """Returns macro, meso and micro pivots and meso segment features."""
    if not request.symbol:
        raise HTTPException(status_code=400, detail="symbol required")
    return await universe_scanner.pivots(request.symbol, request.timeframe)


# --- Background Tasks ---
async def cache_purge_loop(interval_seconds: float = CACHE_PURGE_INTERVAL_SECONDS):
    """Evicts expired OHLCV cache entries periodically."""
    while True:
        await asyncio.sleep(interval_seconds)
        purge = getattr(scanner.cache, "purge_expired", None)
        if purge is not None:
            purge()


# --- Startup and Shutdown Events ---
@app.on_event("startup")
async def startup_event():
    global cache_purge_task
    logger.info("Starting application...")
    cache_purge_task = asyncio.create_task(cache_purge_loop())
    logger.info("Cache cleanup worker started.")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down application...")
    if cache_purge_task is not None:
        cache_purge_task.cancel()
    logger.info("Application shutdown complete.")


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting FastAPI server...")
    uvicorn.run(app, host="0.0.0.0", port=8003)
