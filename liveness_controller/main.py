"""FastAPI entry-point for the depth liveness controller."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Optional

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .analysis.features import GRID_SIZE
from .config import Settings, get_settings
from .errors import LivenessError
from .logging_config import configure_logging
from .session_manager import SessionManager
from .state import ChallengeDirection

logger = logging.getLogger(__name__)

GRID_CELLS = GRID_SIZE * GRID_SIZE


class VerificationStartRequest(BaseModel):
    direction: Optional[ChallengeDirection] = None


class DepthFrameRequest(BaseModel):
    # Row-major depths in meters; null marks a cell without a depth reading
    grid: List[Optional[float]] = Field(..., min_length=GRID_CELLS, max_length=GRID_CELLS)
    face_detected: bool = True
    timestamp: Optional[float] = None

    def cells(self) -> List[float]:
        return [math.nan if value is None else value for value in self.grid]


class YawRequest(BaseModel):
    yaw: Optional[float] = None
    timestamp: Optional[float] = None


class EnrollmentFrameRequest(BaseModel):
    grid: List[Optional[float]] = Field(..., min_length=GRID_CELLS, max_length=GRID_CELLS)
    timestamp: Optional[float] = None

    def cells(self) -> List[float]:
        return [math.nan if value is None else value for value in self.grid]


class ManualResultRequest(BaseModel):
    is_live: bool


def create_app(settings: Optional[Settings] = None, manager: Optional[SessionManager] = None) -> FastAPI:
    settings = settings or get_settings()
    manager = manager or SessionManager(settings=settings)
    app = FastAPI(title="depth-liveness-controller", version="0.1.0")
    app.state.manager = manager

    @app.exception_handler(LivenessError)
    async def liveness_exception_handler(request: Request, exc: LivenessError) -> JSONResponse:
        logger.warning(f"Rejected {request.url.path}: {exc}")
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors gracefully."""
        logger.warning(f"Validation error in {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning(f"Invalid input in {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
        return PlainTextResponse(
            f"Internal server error: {str(exc)}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        configure_logging(
            settings.log_level,
            settings.log_directory,
            settings.log_retention_days,
            settings.analysis_log_level,
        )
        await manager.start()
        logger.info("Application started successfully")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        try:
            await manager.stop()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception(f"Error during shutdown: {e}")

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        return JSONResponse({"status": "ok", "phase": manager.phase.value})

    @app.get("/debug/performance")
    async def debug_performance() -> JSONResponse:
        """Get real-time CPU and memory usage."""
        try:
            cpu_percent = psutil.cpu_percent(interval=0.1)
            memory = psutil.virtual_memory()

            return JSONResponse({
                "cpu_percent": round(cpu_percent, 1),
                "memory_percent": round(memory.percent, 1),
                "memory_used_mb": round(memory.used / (1024 * 1024), 1),
                "memory_total_mb": round(memory.total / (1024 * 1024), 1),
            })
        except Exception as e:
            logger.error(f"Performance monitoring error: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    @app.post("/verification/start")
    async def verification_start(payload: Optional[VerificationStartRequest] = None) -> JSONResponse:
        direction = payload.direction if payload else None
        session_id = await manager.start_verification(direction=direction)
        return JSONResponse({"status": "started", "session_id": session_id, "phase": manager.phase.value})

    @app.post("/verification/frame")
    async def verification_frame(payload: DepthFrameRequest) -> JSONResponse:
        result = await manager.submit_depth_frame(
            payload.cells(),
            face_detected=payload.face_detected,
            now=payload.timestamp,
        )
        return JSONResponse(result)

    @app.post("/verification/yaw")
    async def verification_yaw(payload: YawRequest) -> JSONResponse:
        challenge_status = await manager.submit_yaw(payload.yaw, now=payload.timestamp)
        return JSONResponse({"challenge_status": challenge_status.value, "phase": manager.phase.value})

    @app.post("/verification/manual")
    async def verification_manual(payload: ManualResultRequest) -> JSONResponse:
        stored = await manager.record_manual_result(payload.is_live)
        return JSONResponse({"status": "stored" if stored else "ignored"})

    @app.get("/verification/status")
    async def verification_status() -> JSONResponse:
        return JSONResponse(manager.status())

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    @app.post("/enrollment/start")
    async def enrollment_start() -> JSONResponse:
        state = await manager.start_enrollment()
        return JSONResponse({"state": state.value, **manager.status()["enrollment"]})

    @app.post("/enrollment/frame")
    async def enrollment_frame(payload: EnrollmentFrameRequest) -> JSONResponse:
        await manager.submit_enrollment_frame(payload.cells(), now=payload.timestamp)
        return JSONResponse(manager.status()["enrollment"])

    @app.post("/enrollment/cancel")
    async def enrollment_cancel() -> JSONResponse:
        await manager.cancel_enrollment()
        return JSONResponse(manager.status()["enrollment"])

    @app.delete("/enrollment")
    async def enrollment_reset() -> JSONResponse:
        await manager.reset_enrollment()
        return JSONResponse({"status": "cleared", "personalized": False})

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @app.get("/results")
    async def results_list() -> JSONResponse:
        records = [record.model_dump(mode="json") for record in manager.result_log.all()]
        return JSONResponse({"results": records, "count": len(records)})

    @app.get("/results/export")
    async def results_export() -> PlainTextResponse:
        return PlainTextResponse(
            manager.result_log.export_json(),
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="verification_results.json"'},
        )

    @app.delete("/results")
    async def results_clear() -> JSONResponse:
        manager.result_log.clear()
        return JSONResponse({"status": "cleared"})

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = manager.register_ui()
        try:
            while True:
                try:
                    event = await queue.get()
                except asyncio.CancelledError:
                    break  # Clean shutdown

                payload = {
                    "type": event.type,
                    "phase": event.phase.value,
                    "data": event.data,
                }
                if event.error:
                    payload["error"] = event.error

                try:
                    await ws.send_json(payload)
                except Exception as e:
                    # WebSocket closed, break out of loop
                    logger.debug(f"WebSocket send failed (client disconnected): {e}")
                    break
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Unexpected error in UI websocket: {e}")
        finally:
            manager.unregister_ui(queue)
            try:
                await ws.close()
            except Exception:
                pass

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.controller_host, port=settings.controller_port)


__all__ = ["app", "create_app", "run"]
