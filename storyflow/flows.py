"""Flow registry and executor.

A flow is a named async handler with optional input/output schemas. The
registry runs one request end-to-end:

  1. Look the flow up by name (NotFound when missing).
  2. Validate the input against input_schema (ValidationFailure; the handler
     is not called).
  3. Resolve the session: reuse a known id, create an unknown id, or create a
     fresh one when none is given.
  4. Await handler(input, FlowContext).
  5. Validate the result against output_schema (ValidationFailure; whatever
     the handler already did to the session stays done).
  6. Wrap everything in a FlowResponse envelope.

run() never raises: every failure, including handler exceptions, ends up in
the envelope's error field. execute() is the raising variant for callers
that prefer exceptions.

Schemas are anything pydantic.TypeAdapter accepts: usually a BaseModel
subclass, sometimes a plain type such as str. Results are dumped in JSON mode
using wire (camelCase) aliases.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from storyflow.models import FlowResponse
from storyflow.sessions import SessionStore

logger = logging.getLogger(__name__)


class FlowError(Exception):
    """Base for failures reported by the executor itself."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class NotFound(FlowError):
    """The requested flow name is not registered."""


class ValidationFailure(FlowError):
    """Input or output did not match the flow's schema."""


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass(frozen=True)
class FlowContext:
    session_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Any, FlowContext], Awaitable[Any]]


@dataclass(frozen=True)
class FlowDefinition:
    name: str
    handler: Handler
    input_schema: Any = None
    output_schema: Any = None


class FlowRegistry:
    """Named flows plus the session store they run against.

    With ``serialize_sessions=True`` runs that share a session id are queued
    behind a per-session asyncio.Lock. By default they may interleave.
    """

    def __init__(self, store: SessionStore, *, serialize_sessions: bool = False) -> None:
        self.store = store
        self._flows: dict[str, FlowDefinition] = {}
        self._adapters: dict[str, tuple[TypeAdapter | None, TypeAdapter | None]] = {}
        self._serialize = serialize_sessions
        self._locks: dict[str, _SessionLock] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, flow: FlowDefinition) -> FlowDefinition:
        """Add a flow; a flow already registered under the name is replaced."""
        if flow.name in self._flows:
            logger.warning("Flow %r redefined, replacing previous handler", flow.name)
        self._flows[flow.name] = flow
        self._adapters[flow.name] = (
            TypeAdapter(flow.input_schema) if flow.input_schema is not None else None,
            TypeAdapter(flow.output_schema) if flow.output_schema is not None else None,
        )
        logger.info("Defined flow: %s", flow.name)
        return flow

    def flow(
        self,
        name: str,
        *,
        input_schema: Any = None,
        output_schema: Any = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""

        def decorator(handler: Handler) -> Handler:
            self.register(FlowDefinition(
                name=name, handler=handler,
                input_schema=input_schema, output_schema=output_schema,
            ))
            return handler

        return decorator

    def get(self, name: str) -> FlowDefinition | None:
        return self._flows.get(name)

    def list(self) -> list[str]:
        return list(self._flows)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _resolve_session(self, session_id: str | None) -> str:
        if session_id and self.store.has_session(session_id):
            return session_id
        return self.store.create_session(session_id)

    @staticmethod
    def _validate(adapter: TypeAdapter, value: Any, message: str, session_id: str | None) -> Any:
        try:
            return adapter.validate_python(value)
        except ValidationError as e:
            error = ValidationFailure(f"{message}: {e}", session_id=session_id)
            logger.error("%s", error)
            raise error from e

    @staticmethod
    def _dump(adapter: TypeAdapter | None, value: Any) -> Any:
        if adapter is not None:
            return adapter.dump_python(value, mode="json", by_alias=True)
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json", by_alias=True)
        return value

    async def _invoke(self, flow: FlowDefinition, value: Any, session_id: str) -> Any:
        ctx = FlowContext(session_id=session_id, metadata={"flow": flow.name})
        if not self._serialize:
            return await flow.handler(value, ctx)
        entry = self._locks.setdefault(session_id, _SessionLock())
        entry.holders += 1
        try:
            async with entry.lock:
                return await flow.handler(value, ctx)
        finally:
            entry.holders -= 1
            if not entry.holders:
                del self._locks[session_id]

    async def _run(self, name: str, input: Any, session_id: str | None) -> FlowResponse:
        flow = self._flows.get(name)
        if flow is None:
            error = NotFound(f"Flow '{name}' not found", session_id=session_id)
            logger.error("%s", error)
            raise error

        in_adapter, out_adapter = self._adapters[name]
        logger.info("Running flow: %s", name)

        value = input
        if in_adapter is not None:
            value = self._validate(
                in_adapter, input, f"Input validation failed for flow '{name}'", session_id
            )

        sid = self._resolve_session(session_id)
        try:
            result = await self._invoke(flow, value, sid)
        except Exception as e:
            logger.exception("Flow '%s' error", name)
            raise FlowError(str(e) or type(e).__name__, session_id=sid) from e
        if out_adapter is not None:
            result = self._validate(
                out_adapter, result, f"Output validation failed for flow '{name}'", sid
            )
        try:
            payload = self._dump(out_adapter, result)
        except Exception as e:
            logger.exception("Flow '%s' result could not be serialized", name)
            raise FlowError(str(e) or type(e).__name__, session_id=sid) from e

        logger.info("Flow '%s' completed successfully", name)
        return FlowResponse(result=payload, session_id=sid)

    async def run(self, name: str, input: Any, session_id: str | None = None) -> FlowResponse:
        """Run a flow and return its envelope. Never raises."""
        try:
            return await self._run(name, input, session_id)
        except FlowError as e:
            return FlowResponse(session_id=e.session_id, error=str(e))

    async def execute(self, name: str, input: Any, session_id: str | None = None) -> Any:
        """Run a flow and return only its result.

        Raises NotFound, ValidationFailure, or FlowError for a handler error.
        """
        response = await self._run(name, input, session_id)
        return response.result
