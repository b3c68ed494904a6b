"""
FastAPI Application — provider webhooks, sequence stub and operator API.

Provides:
- Twilio webhooks: TwiML prompt, keypress gather, call and SMS status callbacks
- LINE webhook for chat postbacks
- Sequence simulation endpoints (/stub/sequence)
- Manual resolve, job status and manual job triggers
- Scheduler for the heat-alert and escalation jobs, run inside the lifespan

Webhook signatures are enforced in strict mode (401 on failure) and only
logged in permissive mode. See WebhookConfig.is_strict.
"""
from __future__ import annotations

import hashlib
import hmac
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from channels.base import ChannelRegistry
from channels.push_adapter import ChatPushAdapter
from channels.sms_adapter import SMSAdapter
from channels.telephony.twilio_client import TwilioClient
from channels.voice_adapter import VoiceAdapter
from config.settings import Settings, get_settings
from context.state_machine import AlertStateMachine
from core.dispatcher import ContactDispatcher
from core.inbound import (
    DeliveryStatusEvent, InboundEventHandler, InboundResult, InboundStatus,
    KeypressEvent, PostbackEvent,
)
from core.planner import EscalationDelays, EscalationPlanner
from core.sequence import DEFAULT_DELAY_MS, SequenceOrchestrator
from database.store_base import BaseAlertStore
from database.store_factory import create_store
from jobs.escalation import EscalationJob
from jobs.heat_alert import HeatAlertJob
from jobs.scheduler import Scheduler
from models.schemas import Household
from rules.engine import RuleEngine
from utils.clock import Clock, SystemClock
from utils.retry import RetryExecutor
from weather.provider import HeatIndexProvider, create_heat_index_provider

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    clock: Clock
    store: BaseAlertStore
    voice: VoiceAdapter
    sms: SMSAdapter
    push: ChatPushAdapter
    channels: ChannelRegistry
    weather: HeatIndexProvider
    dispatcher: ContactDispatcher
    heat_alert_job: HeatAlertJob
    escalation_job: EscalationJob
    scheduler: Scheduler
    inbound: InboundEventHandler
    sequences: SequenceOrchestrator


def build_services(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    store: Optional[BaseAlertStore] = None,
    weather: Optional[HeatIndexProvider] = None,
) -> Services:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = store or create_store(settings.database)
    esc = settings.escalation

    voice, sms, push = VoiceAdapter(), SMSAdapter(), ChatPushAdapter()
    channels = ChannelRegistry(voice, sms, push)
    retry = RetryExecutor(sleep=clock.sleep, overrides=settings.retry)
    weather = weather or create_heat_index_provider(settings.weather, clock=clock, retry=retry)

    dispatcher = ContactDispatcher(store, channels, retry=retry, clock=clock)
    rules = RuleEngine(quiet_hours=esc.quiet_hours, notification_windows=esc.notification_windows)
    planner = EscalationPlanner(EscalationDelays.from_seconds(
        esc.first_retry_s, esc.family_notify_s, esc.neighbor_notify_s,
    ))
    state_machine = AlertStateMachine()

    heat_alert_job = HeatAlertJob(store, weather, rules, dispatcher, clock=clock, timezone=settings.timezone)
    escalation_job = EscalationJob(
        store, dispatcher, planner=planner, state_machine=state_machine,
        clock=clock, timezone=settings.timezone, max_concurrency=esc.max_concurrency,
    )
    scheduler = Scheduler(clock)
    scheduler.add_job(
        heat_alert_job, settings.scheduler.heat_alert_interval_s,
        run_on_start=settings.scheduler.run_heat_alert_on_start,
    )
    scheduler.add_job(escalation_job, settings.scheduler.escalation_interval_s)

    return Services(
        settings=settings,
        clock=clock,
        store=store,
        voice=voice,
        sms=sms,
        push=push,
        channels=channels,
        weather=weather,
        dispatcher=dispatcher,
        heat_alert_job=heat_alert_job,
        escalation_job=escalation_job,
        scheduler=scheduler,
        inbound=InboundEventHandler(
            store, state_machine=state_machine, dispatcher=dispatcher, push=push, clock=clock,
        ),
        sequences=SequenceOrchestrator(store, clock=clock, planner=planner),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    settings = services.settings

    await services.channels.initialize_all(settings.channels)
    if settings.scheduler.enabled:
        await services.scheduler.start()

    logger.info(
        "heatwatch_started",
        environment=settings.environment,
        strict_signatures=settings.webhooks.is_strict(settings.environment),
        store=type(services.store).__name__,
    )
    yield

    await services.scheduler.stop()
    await services.weather.close()
    await services.channels.shutdown_all()
    logger.info("heatwatch_stopped")


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class SequenceStartRequest(BaseModel):
    alert_id: Optional[str] = None
    household_id: Optional[str] = None
    delay_ms: int = Field(DEFAULT_DELAY_MS, ge=0)
    final_dtmf: Optional[str] = None


class ResolveRequest(BaseModel):
    source: str = "manual"


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def _services(request: Request) -> Services:
    return request.app.state.services


def _check_signature(services: Services, provider: str, valid: bool) -> None:
    """Reject in strict mode, log and accept otherwise."""
    if valid:
        return
    settings = services.settings
    if settings.webhooks.is_strict(settings.environment):
        logger.warning("webhook_signature_rejected", provider=provider)
        raise HTTPException(401, "Invalid signature")
    logger.warning("webhook_signature_invalid_accepted", provider=provider)


def _twilio_url(services: Services, request: Request) -> str:
    """The URL Twilio signed. Behind a proxy, rebuild it from public_base_url."""
    base = services.settings.webhooks.public_base_url.rstrip("/")
    if not base:
        return str(request.url)
    query = f"?{request.url.query}" if request.url.query else ""
    return f"{base}{request.url.path}{query}"


def verify_hmac_sha256(secret: str, body: bytes, signature: str) -> bool:
    """Generic X-Signature: hex HMAC-SHA256 over the raw body, optional `sha256=` prefix."""
    if not secret or not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


async def _verified_twilio_form(services: Services, request: Request) -> dict[str, Any]:
    body = dict(await request.form())
    valid = services.voice.validate_request(
        _twilio_url(services, request), body, request.headers.get("X-Twilio-Signature", ""),
    )
    _check_signature(services, "twilio", valid)
    return body


async def _verified_generic(services: Services, request: Request) -> None:
    body = await request.body()
    valid = verify_hmac_sha256(
        services.settings.webhooks.secret, body, request.headers.get("X-Signature", ""),
    )
    _check_signature(services, "generic", valid)


def _schedule(background: BackgroundTasks, result: InboundResult) -> None:
    if result.deferred:
        background.add_task(InboundEventHandler.run_deferred, result)


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


router = APIRouter()


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    services = _services(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": services.settings.environment,
        "channels": await services.channels.health_check_all(),
        "scheduler_running": services.scheduler.is_running,
    }


@router.get("/api/v1/stats")
async def get_stats(request: Request):
    return await _services(request).store.get_stats()


# ══════════════════════════════════════════════════════════════
#  TWILIO WEBHOOKS
# ══════════════════════════════════════════════════════════════

@router.api_route("/webhooks/twilio/twiml", methods=["GET", "POST"])
async def twilio_twiml(request: Request, alert_id: str, name: str = "", attempt: int = 1):
    """Answer URL — Twilio fetches the keypress prompt when the call connects."""
    services = _services(request)
    if request.method == "POST":
        await _verified_twilio_form(services, request)
    return _twiml(services.voice.render_gather_twiml(alert_id, name, attempt))


@router.post("/webhooks/twilio/gather")
async def twilio_gather(request: Request, background: BackgroundTasks, alert_id: str, attempt: int = 1):
    """Keypress result. Follow-up notifications run after the TwiML reply is sent."""
    services = _services(request)
    body = await _verified_twilio_form(services, request)
    digits = body.get("Digits", "")

    result = await services.inbound.handle_keypress(KeypressEvent(
        alert_id=alert_id, digits=digits, attempt=attempt, call_id=body.get("CallSid", ""),
    ))
    _schedule(background, result)
    logger.info("twilio_gather", alert_id=alert_id, digits=digits, result=result.status.value)
    return _twiml(VoiceAdapter.render_keypress_reply(digits))


async def _status_callback(request: Request, kind: str) -> dict[str, Any]:
    services = _services(request)
    body = await _verified_twilio_form(services, request)
    normalized = TwilioClient.parse_status_webhook(body)
    result = await services.inbound.handle_delivery_status(DeliveryStatusEvent(
        provider_id=normalized["provider_id"],
        status=normalized["status"],
        duration_sec=normalized["duration"],
        error_code=str(normalized["error_code"] or ""),
    ))
    logger.info(
        "twilio_status", kind=kind, provider_id=normalized["provider_id"],
        status=normalized["status"], result=result.status.value,
    )
    return result.to_dict()


@router.post("/webhooks/twilio/status")
async def twilio_call_status(request: Request):
    """Call status callback — form-encoded."""
    return await _status_callback(request, "call")


@router.post("/webhooks/twilio/sms-status")
async def twilio_sms_status(request: Request):
    """SMS status callback — form-encoded."""
    return await _status_callback(request, "sms")


# ══════════════════════════════════════════════════════════════
#  LINE WEBHOOK
# ══════════════════════════════════════════════════════════════

@router.post("/webhooks/line")
async def line_webhook(request: Request, background: BackgroundTasks):
    services = _services(request)
    body = await request.body()
    valid = services.push.validate_signature(body, request.headers.get("X-Line-Signature", ""))
    _check_signature(services, "line", valid)

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON")

    results = []
    for event in payload.get("events", []):
        if event.get("type") != "postback":
            continue
        result = await services.inbound.handle_postback(PostbackEvent.from_data(
            event.get("postback", {}).get("data", ""),
            user_id=event.get("source", {}).get("userId", ""),
            reply_token=event.get("replyToken", ""),
            event_id=event.get("webhookEventId", ""),
        ))
        _schedule(background, result)
        results.append(result.to_dict())
    return {"status": "ok", "results": results}


# ══════════════════════════════════════════════════════════════
#  SEQUENCE STUB
# ══════════════════════════════════════════════════════════════

@router.post("/stub/sequence/start")
async def start_sequence(req: SequenceStartRequest, request: Request):
    sequence_id = await _services(request).sequences.start(
        alert_id=req.alert_id,
        household_id=req.household_id,
        delay_ms=req.delay_ms,
        final_dtmf=req.final_dtmf,
    )
    return {"sequence_id": sequence_id}


@router.get("/stub/sequence/{sequence_id}")
async def get_sequence(sequence_id: str, request: Request):
    sequence = await _services(request).sequences.get(sequence_id)
    if sequence is None:
        raise HTTPException(404, "Sequence not found")
    return {
        "status": sequence.status.value,
        "steps": [step.model_dump(mode="json", exclude_none=True) for step in sequence.steps],
    }


@router.post("/stub/sequence/{sequence_id}/cancel")
async def cancel_sequence(sequence_id: str, request: Request):
    cancelled = await _services(request).sequences.cancel(sequence_id)
    if not cancelled:
        raise HTTPException(404, "No running sequence with that id")
    return {"status": "cancelled"}


# ══════════════════════════════════════════════════════════════
#  OPERATOR API
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/households")
async def upsert_household(household: Household, request: Request):
    services = _services(request)
    await _verified_generic(services, request)
    saved = await services.store.upsert_household(household)
    return saved.model_dump(mode="json")


@router.get("/api/v1/alerts/{alert_id}")
async def get_alert(alert_id: str, request: Request):
    store = _services(request).store
    alert = await store.get_alert(alert_id)
    if alert is None:
        raise HTTPException(404, "Alert not found")
    return {
        **alert.model_dump(mode="json"),
        "call_logs": [log.model_dump(mode="json") for log in await store.get_call_logs(alert_id)],
        "notifications": [n.model_dump(mode="json") for n in await store.get_notifications(alert_id)],
    }


@router.post("/api/v1/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: str, request: Request, req: Optional[ResolveRequest] = None):
    services = _services(request)
    await _verified_generic(services, request)
    result = await services.inbound.resolve(alert_id, source=(req or ResolveRequest()).source)
    if result.status == InboundStatus.NOT_FOUND:
        raise HTTPException(404, "Alert not found")
    return result.to_dict()


@router.get("/api/v1/jobs/status")
async def jobs_status(request: Request):
    return _services(request).scheduler.status()


@router.post("/api/v1/jobs/{job_name}/run")
async def run_job(job_name: str, request: Request):
    services = _services(request)
    await _verified_generic(services, request)
    try:
        stats = await services.scheduler.run_job(job_name)
    except KeyError:
        raise HTTPException(404, f"Unknown job: {job_name}")
    if stats is None:
        return {"job": job_name, "skipped": True, "reason": "busy"}
    return stats.to_dict()


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="HeatWatch API",
        description="Heat-stress alert escalation and notification orchestration",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()
