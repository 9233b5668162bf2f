"""
FastAPI Backend for the IPD Measurement Application.
Accepts per-frame detections from the capture client and reports the
measurement state, guidance message and smoothed result.
"""

import base64
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import cv2
import numpy as np
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ipd_engine.config import Configuration, load_config
from ipd_engine.exceptions import ControllerStateError, InvalidInputError
from ipd_service import IPDService

logger = logging.getLogger(__name__)


class FrameRequest(BaseModel):
    """One frame of detections, optionally with the frame image."""
    face: Optional[Dict[str, Any]] = None
    faces: Optional[List[Dict[str, Any]]] = None
    eyes: Optional[Dict[str, Any]] = None
    card: Optional[Dict[str, Any]] = None
    imageWidth: Optional[float] = None
    imageHeight: Optional[float] = None
    timestamp: Optional[float] = None
    image: Optional[str] = None


def decode_base64_image(base64_str: str) -> np.ndarray:
    """Decode base64 image string to numpy array."""
    if ',' in base64_str:
        base64_str = base64_str.split(',')[1]

    try:
        img_bytes = base64.b64decode(base64_str, validate=True)
    except ValueError:
        raise ValueError("Invalid base64 image data")

    nparr = np.frombuffer(img_bytes, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    if image is None:
        raise ValueError("Failed to decode image")

    return image


def create_app(
    config: Optional[Configuration] = None,
    service: Optional[IPDService] = None
) -> FastAPI:
    """Build the API around one measurement service."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.service.shutdown()

    app = FastAPI(
        title="IPD Measurement API",
        description="API for measuring interpupillary distance using a reference card",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if service is None:
        service = IPDService(config or load_config())
        service.initialize()
    app.state.service = service

    def get_service(request: Request) -> IPDService:
        return request.app.state.service

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "IPD Measurement API"}

    @app.post("/api/session/start")
    def start_session(request: Request):
        """Start or restart a measurement session."""
        try:
            return get_service(request).start_session()
        except ControllerStateError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/api/session/stop")
    def stop_session(request: Request):
        """Stop the current measurement session."""
        return get_service(request).stop_session()

    @app.post("/api/session/initialize")
    def initialize(request: Request):
        """Re-initialize after an error."""
        try:
            return get_service(request).initialize()
        except ControllerStateError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/api/frame")
    def submit_frame(frame: FrameRequest, request: Request):
        """Process one frame of detections."""
        payload = frame.model_dump(exclude={"image", "timestamp"})
        try:
            image = decode_base64_image(frame.image) if frame.image else None
            return get_service(request).submit_frame(payload, image, frame.timestamp)
        except (InvalidInputError, ValueError) as e:
            logger.warning(f"Rejected frame: {e}")
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/api/status")
    def status(request: Request):
        """Current state, guidance message, latest result and debug info."""
        return get_service(request).status()

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("\n" + "="*60)
    print("  IPD Measurement API Server")
    print("="*60)
    print("\n  Starting server on http://0.0.0.0:8000")
    print("  API docs: http://localhost:8000/docs")
    print("\n" + "="*60 + "\n")

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
