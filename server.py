from typing import Any, Dict, Optional
import logging
import os
import time

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from dotenv import load_dotenv

from errors import MobilityError, ProviderError
from mobility_tools import MobilityTools, get_mobility_tools, tools

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


class ToolRequest(BaseModel):
    session_id: Optional[str] = None
    args: Dict[str, Any] = {}


app = FastAPI(title="Trip Engine API")

# Add CORS middleware to allow frontend requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific frontend URL
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_tools() -> MobilityTools:
    return get_mobility_tools()


@app.on_event("shutdown")
def _shutdown():
    if os.getenv("SESSION_STORE", "memory").lower() == "postgres":
        from database import close_pool
        close_pool()


@app.get("/health")
async def health_endpoint():
    return {"ok": True}


@app.get("/tools")
async def tools_endpoint():
    """Tool definitions (OpenAI function-calling format) for the conversational layer."""
    return {"tools": tools}


@app.get("/config")
async def config_endpoint():
    """
    Returns frontend configuration. Public: only reports whether the
    Google Maps key is configured, never the key itself.
    """
    has_key = bool(os.getenv("GOOGLE_API_KEY") or os.getenv("GOOGLE_MAPS_API_KEY"))
    logger.info(f"GET /config - Google Maps API key present: {has_key}")
    return {
        "has_google_maps": has_key,
        "currency": os.getenv("PRICING_CURRENCY", "USD"),
    }


@app.post("/tools/{name}")
async def tool_endpoint(
    name: str,
    request: Request,
    body: ToolRequest,
    engine: MobilityTools = Depends(get_tools),
):
    """
    Run one tool for a session.

    - Rejected input / state comes back as 200 with {"ok": false, ...}.
    - Unknown tool -> 404, unrecoverable provider failure -> 502.
    """
    start_time = time.time()
    request_id = f"{int(time.time() * 1000)}-{id(request)}"
    session_id = body.session_id or "default"

    logger.info(f"[{request_id}] POST /tools/{name} session={session_id} args={list(body.args)}")

    if name not in engine.tool_names:
        logger.error(f"[{request_id}] Unknown tool: {name}")
        raise HTTPException(status_code=404, detail=f"Unknown tool: {name}")

    try:
        result = await engine.call_tool(name, body.args, session_id)
    except ProviderError as exc:
        logger.error(f"[{request_id}] Provider error in {name}: {exc.message} (status={exc.status})")
        raise HTTPException(status_code=502, detail=f"Routing provider error: {exc.message}") from exc
    except MobilityError as exc:
        logger.error(f"[{request_id}] {type(exc).__name__} in {name}: {exc.message}")
        raise HTTPException(status_code=400, detail=exc.message) from exc

    elapsed_time = time.time() - start_time
    logger.info(f"[{request_id}] POST /tools/{name} ok={result.get('ok')} in {elapsed_time:.2f}s")
    return result


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
