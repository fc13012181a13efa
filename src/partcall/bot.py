import logging
import secrets
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from partcall.backend_sync import BackendClient
from partcall.config import Settings, validate_config
from partcall.llm import LLMClient
from partcall.post_call import handle_call_ended
from partcall.processor import TurnProcessor, UnknownCallError
from partcall.session import CallState, InvalidCallPayload
from partcall.store import InMemoryStateStore, RedisStateStore, StateStoreError

load_dotenv()

logger = logging.getLogger(__name__)


def build_processor(settings: Settings) -> TurnProcessor:
    """Wire the turn processor from environment settings."""
    if settings.redis_url:
        store = RedisStateStore(settings.redis_url, ttl_seconds=settings.state_ttl_seconds)
    else:
        logger.warning("REDIS_URL not set, using in-memory state store (single process only)")
        store = InMemoryStateStore(ttl_seconds=settings.state_ttl_seconds)

    llm = None
    if settings.openai_api_key:
        llm = LLMClient(
            api_key=settings.openai_api_key,
            model=settings.llm_model,
            timeout=settings.llm_timeout_s,
        )
    else:
        logger.warning("OPENAI_API_KEY not set, using rule-based classification only")

    return TurnProcessor(
        store,
        llm=llm,
        llm_timeout=settings.llm_timeout_s,
        max_negotiation_attempts=settings.max_negotiation_attempts,
        callback_number=settings.callback_number,
    )


def create_app(
    processor: TurnProcessor | None = None,
    backend: BackendClient | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    owns_processor = processor is None
    processor = processor or build_processor(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_processor:
            if processor.llm is not None:
                await processor.llm.close()
            if isinstance(processor.store, RedisStateStore):
                await processor.store.close()

    app = FastAPI(title="PartCall Voice Webhook", lifespan=lifespan)
    app.state.processor = processor

    def _check_auth(request: Request):
        if not settings.webhook_secret:
            return
        header = request.headers.get("authorization", "")
        expected = f"Bearer {settings.webhook_secret}"
        if not secrets.compare_digest(header.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="unauthorized")

    async def _after_call(state: CallState):
        """Background: hand the final state downstream, then drop it from the store."""
        synced = await handle_call_ended(state, backend)
        if not synced:
            logger.warning("Call record for %s not synced, keeping state until it expires", state.call_id)
            return
        try:
            await processor.store.delete(state.call_id)
        except StateStoreError as e:
            logger.error("Failed to delete state for %s: %s", state.call_id, e)

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/webhook/voice")
    async def voice_webhook(request: Request, background_tasks: BackgroundTasks):
        _check_auth(request)
        try:
            event = await request.json()
        except ValueError:
            raise HTTPException(status_code=422, detail="body must be JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=422, detail="body must be an object")

        event_type = event.get("type", "")
        call_id = str(event.get("callId") or "").strip()
        if event_type not in ("call_started", "turn", "voicemail_detected", "call_ended"):
            logger.info("Ignoring webhook event type %r", event_type)
            return {"ok": True}
        if not call_id:
            raise HTTPException(status_code=422, detail="callId is required")

        try:
            if event_type == "call_started":
                result = await processor.start_call(call_id, event.get("payload") or {})
            elif event_type == "turn":
                result = await processor.handle_turn(call_id, event.get("text") or "", event.get("payload"))
            elif event_type == "voicemail_detected":
                result = await processor.handle_voicemail(call_id)
            else:
                final = await processor.end_call(call_id)
                if final is not None:
                    background_tasks.add_task(_after_call, final)
                return {"ok": True}
        except InvalidCallPayload as e:
            logger.warning("Rejected call_started for %s: %s", call_id, e)
            raise HTTPException(status_code=422, detail=str(e))
        except UnknownCallError:
            raise HTTPException(status_code=404, detail=f"unknown call {call_id}")
        except StateStoreError as e:
            logger.error("State store unavailable for %s: %s", call_id, e)
            raise HTTPException(status_code=503, detail="state store unavailable")

        return result.to_response()

    return app


app = create_app()


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_config()
    uvicorn.run("partcall.bot:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
