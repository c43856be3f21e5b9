"""Single-slot confirmation handshake between the engine and a decision-maker."""
from __future__ import annotations

import asyncio
import threading
import time
import uuid
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from bitforge.core.exceptions import ConfirmationInProgress

logger = structlog.get_logger(__name__)


class Confirmer(Protocol):
    async def ask(self, title: str, message: str) -> bool: ...


class ConfirmationRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str
    message: str
    created_at: float = Field(default_factory=time.time)


class ConfirmationChannel:
    """One outstanding question at a time, answered from any thread.

    The engine side awaits :meth:`ask` on its event loop; the control thread
    sees the question via :meth:`pending` and answers with :meth:`respond`.
    There is no timeout: only cancelling the awaiting task withdraws a
    question. Asking while another question is outstanding raises
    :class:`ConfirmationInProgress` immediately.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._request: ConfirmationRequest | None = None
        self._future: asyncio.Future[bool] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def __repr__(self) -> str:
        return f"ConfirmationChannel(pending={self._request is not None})"

    async def ask(self, title: str, message: str) -> bool:
        """Publish a question and suspend until :meth:`respond` answers it."""
        loop = asyncio.get_running_loop()
        request = ConfirmationRequest(title=title, message=message)
        future: asyncio.Future[bool] = loop.create_future()
        with self._lock:
            if self._request is not None:
                raise ConfirmationInProgress(
                    f"Confirmation {self._request.request_id!r} is still outstanding",
                    details={"pending_title": self._request.title, "title": title},
                )
            self._request = request
            self._future = future
            self._loop = loop

        logger.info("confirmation_requested", request_id=request.request_id, title=title)
        try:
            answer = await future
        except asyncio.CancelledError:
            logger.info("confirmation_withdrawn", request_id=request.request_id)
            raise
        finally:
            with self._lock:
                if self._request is request:
                    self._request = None
                    self._future = None
                    self._loop = None
        logger.info("confirmation_answered", request_id=request.request_id, answer=answer)
        return answer

    def pending(self) -> ConfirmationRequest | None:
        with self._lock:
            return self._request

    def respond(self, request_id: str, answer: bool) -> bool:
        """Answer the outstanding question. Safe to call from any thread.

        Returns:
            ``False`` when *request_id* does not match the outstanding question
            (already answered, withdrawn, or never issued). Only the first
            answer to a question is accepted; the slot is free once it returns.
        """
        with self._lock:
            if self._request is None or self._request.request_id != request_id:
                return False
            future, loop = self._future, self._loop
            self._request = None
            self._future = None
            self._loop = None
            assert future is not None and loop is not None
            try:
                loop.call_soon_threadsafe(_settle, future, bool(answer))
            except RuntimeError:
                # Loop already closed; the awaiting task is gone.
                return False
        return True


def _settle(future: asyncio.Future[bool], answer: bool) -> None:
    if not future.done():
        future.set_result(answer)
