from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from cadence.config_manager import ConfigManager
from cadence.errors import CadenceError, ForbiddenError, ValidationError
from cadence.event_store import EventStore
from cadence.models import (
    Event,
    EventCreate,
    EventUpdate,
    RecurrenceInput,
    default_query_window,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from cadence.mutations import MutationEngine


logger = logging.getLogger(__name__)


def _check_date_string(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        parse_iso_datetime(value)
    except ValueError as exc:
        raise ValueError("Invalid date format") from exc
    return value


class RecurrenceRequest(BaseModel):
    freq: Literal["DAILY", "WEEKLY", "MONTHLY"]
    interval: int | None = Field(default=None, gt=0)
    until: str | None = None
    byweekday: list[str] = Field(default_factory=list)

    @field_validator("until")
    @classmethod
    def check_until(cls, value: str | None) -> str | None:
        return _check_date_string(value)

    def to_input(self) -> RecurrenceInput:
        return RecurrenceInput(
            freq=self.freq,
            interval=self.interval or 1,
            until=self.until,
            byweekday=list(self.byweekday),
        )


class EventCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    description: str = ""
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")
    timezone: str = Field(min_length=1)
    recurrence: RecurrenceRequest | None = None
    participants: list[str] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def check_times(cls, value: str) -> str:
        return _check_date_string(value)


class EventUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    update_type: str | None = Field(default=None, alias="updateType")
    occurrence_date: str | None = Field(default=None, alias="occurrenceDate")
    delete_occurrence: bool = Field(default=False, alias="deleteOccurrence")
    title: str | None = None
    description: str | None = None
    start_time: str | None = Field(default=None, alias="startTime")
    end_time: str | None = Field(default=None, alias="endTime")
    timezone: str | None = None
    recurrence: RecurrenceRequest | None = None
    participants: list[str] | None = None

    @field_validator("occurrence_date", "start_time", "end_time")
    @classmethod
    def check_times(cls, value: str | None) -> str | None:
        return _check_date_string(value)

    def to_update(self) -> EventUpdate:
        return EventUpdate(
            title=self.title,
            description=self.description,
            start_time=self.start_time,
            end_time=self.end_time,
            timezone=self.timezone,
            recurrence=self.recurrence.to_input() if self.recurrence is not None else None,
            participants=self.participants,
            delete_occurrence=self.delete_occurrence,
        )


@dataclass
class Actor:
    user_id: str
    is_admin: bool = False

    def can_modify(self, event: Event) -> bool:
        return self.is_admin or self.user_id == event.created_by


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.config = self.config_manager.load_effective()
        self.event_store = EventStore(self.config.storage.db_path)
        self.engine = MutationEngine(self.event_store)


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = str(error.get("msg", "invalid value"))
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid request"


def _parse_range_bound(value: str | None, name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {name} datetime") from exc


def create_app(config_path: str | None = None) -> FastAPI:
    config_path = config_path or os.getenv("CADENCE_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="Cadence Events", version="0.1.0")
    app.state.context = context

    @app.exception_handler(CadenceError)
    def _cadence_error(request: Request, exc: CadenceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _format_validation_errors(exc)
        logger.warning("%s %s rejected (400): %s", request.method, request.url.path, message)
        return JSONResponse(status_code=400, content={"error": message})

    def current_actor(request: Request) -> Actor:
        default_user = app.state.context.config.api.default_user_id
        user_id = str(request.headers.get("x-user-id") or default_user).strip() or default_user
        admin_header = str(request.headers.get("x-user-admin") or "")
        return Actor(user_id=user_id, is_admin=admin_header.strip().lower() == "true")

    def load_modifiable(event_id: str, actor: Actor) -> Event:
        event = app.state.context.engine.get_event(event_id)
        if not actor.can_modify(event):
            raise ForbiddenError("Forbidden")
        return event

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/events", status_code=201)
    def create_event(request: EventCreateRequest, actor: Actor = Depends(current_actor)) -> dict[str, Any]:
        event = app.state.context.engine.create_event(
            EventCreate(
                title=request.title,
                description=request.description,
                start_time=request.start_time,
                end_time=request.end_time,
                timezone=request.timezone,
                recurrence=request.recurrence.to_input() if request.recurrence is not None else None,
                participants=list(request.participants),
            ),
            created_by=actor.user_id,
        )
        return event.to_dict()

    @app.get("/api/events/{event_id}")
    def get_event(event_id: str, actor: Actor = Depends(current_actor)) -> dict[str, Any]:
        return load_modifiable(event_id, actor).to_dict()

    @app.get("/api/myevents")
    def my_events(
        start: str | None = None,
        end: str | None = None,
        actor: Actor = Depends(current_actor),
    ) -> dict[str, Any]:
        range_days = app.state.context.config.api.default_range_days
        default_start, default_end = default_query_window(utc_now(), range_days)
        range_start = _parse_range_bound(start, "start") or default_start
        range_end = _parse_range_bound(end, "end") or default_end
        occurrences = app.state.context.engine.list_occurrences(actor.user_id, range_start, range_end)
        return {
            "start": serialize_datetime(range_start),
            "end": serialize_datetime(range_end),
            "occurrences": occurrences,
        }

    @app.put("/api/events/{event_id}")
    def update_event(
        event_id: str,
        request: EventUpdateRequest,
        updateType: str | None = None,
        occurrenceDate: str | None = None,
        actor: Actor = Depends(current_actor),
    ) -> dict[str, Any]:
        load_modifiable(event_id, actor)
        result = app.state.context.engine.update_event(
            event_id,
            updateType or request.update_type,
            request.to_update(),
            occurrence_date=occurrenceDate or request.occurrence_date,
            actor_id=actor.user_id,
        )
        return result.to_dict()

    @app.delete("/api/events/{event_id}")
    def delete_event(
        event_id: str,
        deleteType: str | None = None,
        occurrenceDate: str | None = None,
        actor: Actor = Depends(current_actor),
    ) -> dict[str, Any]:
        load_modifiable(event_id, actor)
        result = app.state.context.engine.delete_event(
            event_id,
            deleteType,
            occurrence_date=occurrenceDate,
            actor_id=actor.user_id,
        )
        return result.to_dict()

    @app.get("/api/audit/events")
    def audit_events(
        limit: int = 100,
        event_id: str | None = None,
        actor: Actor = Depends(current_actor),
    ) -> dict[str, Any]:
        if not actor.is_admin:
            raise ForbiddenError("Forbidden")
        return {"events": app.state.context.event_store.recent_audit_events(limit=limit, event_id=event_id)}

    return app
