import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from tubemap.config import Settings, configure_logging, validate_config
from tubemap.extraction import extract_info
from tubemap.realtime import RealtimeHandler
from tubemap.session_manager import SessionNotFound
from tubemap.transcript import TranscriptEntry, to_json_array, to_plain_text

logger = logging.getLogger(__name__)


class StartCallRequest(BaseModel):
    call_id: str
    phone: str = ""


class TranscriptRequest(BaseModel):
    speaker: str = "caller"
    text: str
    time_offset_seconds: float = 0.0


class ActionRequest(BaseModel):
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ClassifyRequest(BaseModel):
    text: str = ""
    use_tier2: bool = True
    deep: bool = False


class ExtractRequest(BaseModel):
    text: str = ""


def create_app(settings: Optional[Settings] = None, handler: Optional[RealtimeHandler] = None) -> FastAPI:
    settings = settings or Settings()
    handler = handler or RealtimeHandler.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        handler.manager.start_sweeper(settings.sweep_interval_s, settings.session_ttl_s)
        logger.info("Tube map engine ready (tier2=%s)", "on" if settings.tier2_enabled else "off")
        yield
        await handler.manager.stop_sweeper()
        await handler.aclose()

    app = FastAPI(title="Tube Map Call Routing", lifespan=lifespan)
    app.state.handler = handler

    @app.exception_handler(SessionNotFound)
    async def session_not_found(request: Request, exc: SessionNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/calls", status_code=201)
    async def start_call(body: StartCallRequest):
        return handler.start_call(body.call_id, body.phone).to_dict()

    @app.get("/calls")
    async def list_calls():
        return {"count": handler.get_active_session_count(), "sessions": handler.get_active_session_summaries()}

    @app.get("/calls/{call_id}")
    async def get_call(call_id: str):
        machine = handler.manager.get(call_id)
        return {
            "state": machine.get_state().to_dict(),
            "prompt": machine.get_current_prompt(),
            "available_destinations": [d.value for d in machine.get_available_destinations()],
        }

    @app.post("/calls/{call_id}/transcript", status_code=202)
    async def add_transcript(call_id: str, body: TranscriptRequest):
        if not body.text.strip():
            raise HTTPException(status_code=400, detail="text is required")
        entry = TranscriptEntry(body.speaker, body.text, body.time_offset_seconds)
        if not handler.handle_entry(call_id, entry):
            raise HTTPException(status_code=404, detail=f"No session for call {call_id}")
        return {"accepted": True}

    @app.get("/calls/{call_id}/transcript")
    async def get_transcript(call_id: str, format: str = "json"):
        entries = handler.get_transcript(call_id)
        if format == "text":
            return PlainTextResponse(to_plain_text(entries))
        if format != "json":
            raise HTTPException(status_code=400, detail="format must be json or text")
        return {"call_id": call_id, "entries": to_json_array(entries)}

    @app.post("/calls/{call_id}/actions")
    async def apply_action(call_id: str, body: ActionRequest):
        result = handler.handle_action(call_id, body.action, body.payload)
        if result["reason"] == "session_not_found":
            raise HTTPException(status_code=404, detail=f"No session for call {call_id}")
        if not result["success"]:
            raise HTTPException(status_code=400, detail=result)
        return result

    @app.delete("/calls/{call_id}")
    async def end_call(call_id: str):
        final = await handler.end_call(call_id)
        if final is None:
            raise HTTPException(status_code=404, detail=f"No session for call {call_id}")
        return final.to_dict()

    @app.post("/classify")
    async def classify(body: ClassifyRequest):
        result = await handler.classifier.classify(body.text, use_tier2=body.use_tier2, deep=body.deep)
        return result.to_dict()

    @app.post("/extract")
    async def extract(body: ExtractRequest):
        return extract_info(body.text).to_dict()

    return app


def main() -> None:
    load_dotenv()
    settings = validate_config()
    configure_logging(settings.log_level)
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
