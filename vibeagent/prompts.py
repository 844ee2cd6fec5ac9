"""
UI prompt ports — how the agent core hands control to the user interface.

Three prompts exist: the init notice, the manifest consent dialog, and the
per-call action confirmation. The core awaits them through a PromptPort:

    CallbackPrompts  wraps plain (sync or async) callables
    PromptChannel    a bounded queue of typed requests; the UI answers each by id

Every prompt is bounded by a timeout (PROMPT_TIMEOUT; 0 disables it).

Depends on: config, errors, models
"""

import asyncio
import inspect
import sys
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from vibeagent.config import PROMPT_QUEUE_MAX, PROMPT_TIMEOUT
from vibeagent.errors import PromptTimeoutError, UIHandlerMissingError
from vibeagent.models import ActionRequest, ActionResponse, AppManifest, ConsentRequest

Grants = Optional[dict[str, str]]


def coerce_action_response(value: Any) -> ActionResponse:
    """Accept an ActionResponse, a bare bool, or {"allowed", "rememberChoice"}."""
    if isinstance(value, ActionResponse):
        return value
    if isinstance(value, bool):
        return ActionResponse(allowed=value)
    if isinstance(value, dict):
        remember = value.get("rememberChoice", value.get("remember_choice", False))
        return ActionResponse(allowed=bool(value.get("allowed")), remember_choice=bool(remember))
    return ActionResponse(allowed=False)


async def _bounded(awaitable: Awaitable, timeout: Optional[float], what: str):
    if not timeout:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise PromptTimeoutError(f"No answer to {what} prompt within {timeout:g}s") from None


class PromptPort(ABC):
    """What the consent coordinator and action mediator need from the UI layer."""

    @abstractmethod
    async def request_init_prompt(self, manifest: AppManifest) -> None:
        """Show the low-friction init notice; returns once acknowledged."""
        ...

    @abstractmethod
    async def request_consent(self, request: ConsentRequest) -> Grants:
        """Show the consent dialog. Returns scope -> setting, or None if the user declined."""
        ...

    @abstractmethod
    async def request_action_confirmation(self, request: ActionRequest) -> ActionResponse:
        ...


class UnwiredPrompts(PromptPort):
    """Placeholder until the UI layer wires its handlers."""

    async def request_init_prompt(self, manifest: AppManifest) -> None:
        raise UIHandlerMissingError("Init prompt handler not set")

    async def request_consent(self, request: ConsentRequest) -> Grants:
        raise UIHandlerMissingError("Consent handler not set")

    async def request_action_confirmation(self, request: ActionRequest) -> ActionResponse:
        raise UIHandlerMissingError("Action confirmation handler not set")


# =============================================================================
# Callback port
# =============================================================================

Handler = Callable[[Any], Any]


class CallbackPrompts(PromptPort):
    """Prompt port backed by callables. A missing handler raises UIHandlerMissingError."""

    def __init__(self, on_init_prompt: Optional[Handler] = None,
                 on_consent: Optional[Handler] = None,
                 on_action: Optional[Handler] = None,
                 timeout: Optional[float] = PROMPT_TIMEOUT):
        self.on_init_prompt = on_init_prompt
        self.on_consent = on_consent
        self.on_action = on_action
        self.timeout = timeout

    async def _call(self, handler: Optional[Handler], arg: Any, what: str) -> Any:
        if handler is None:
            raise UIHandlerMissingError(f"{what} handler not set")
        result = handler(arg)
        if inspect.isawaitable(result):
            result = await _bounded(result, self.timeout, what)
        return result

    async def request_init_prompt(self, manifest: AppManifest) -> None:
        await self._call(self.on_init_prompt, manifest, "init")

    async def request_consent(self, request: ConsentRequest) -> Grants:
        return await self._call(self.on_consent, request, "consent")

    async def request_action_confirmation(self, request: ActionRequest) -> ActionResponse:
        return coerce_action_response(await self._call(self.on_action, request, "action"))


# =============================================================================
# Queue-based channel
# =============================================================================

class PromptKind(str, Enum):
    INIT = "init"
    CONSENT = "consent"
    ACTION = "action"


@dataclass
class PromptRequest:
    """One pending prompt as seen by the UI consumer."""
    request_id: str
    kind: PromptKind
    payload: Union[AppManifest, ConsentRequest, ActionRequest]


class PromptChannel(PromptPort):
    """Request/response channel between the agent core and a UI consumer.

    The core puts a PromptRequest on a bounded queue and awaits the future
    registered under its request_id. The UI loop calls next_request(),
    shows the prompt, and answers with respond(request_id, value).
    Until attach() is called every prompt fails with UIHandlerMissingError.
    """

    def __init__(self, maxsize: int = PROMPT_QUEUE_MAX,
                 timeout: Optional[float] = PROMPT_TIMEOUT):
        self.timeout = timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._pending: dict[str, asyncio.Future] = {}
        self._attached = False

    # -- UI side ---------------------------------------------------------------

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        self._attached = True

    def detach(self) -> None:
        """Stop serving prompts. Outstanding prompts fail with UIHandlerMissingError."""
        self._attached = False
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(UIHandlerMissingError("UI detached before answering"))
        while not self._queue.empty():
            self._queue.get_nowait()

    async def next_request(self) -> PromptRequest:
        return await self._queue.get()

    def respond(self, request_id: str, value: Any = None) -> bool:
        """Answer a prompt. Returns False if it is unknown or already settled (e.g. timed out)."""
        fut = self._pending.get(request_id)
        if fut is None or fut.done():
            print(f"[VibeAgent] Ignoring answer to unknown prompt {request_id}", file=sys.stderr)
            return False
        fut.set_result(value)
        return True

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Core side ---------------------------------------------------------------

    async def _exchange(self, kind: PromptKind, payload) -> Any:
        if not self._attached:
            raise UIHandlerMissingError(f"No UI attached to answer {kind.value} prompts")
        request_id = str(uuid.uuid4())
        fut = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut

        async def round_trip():
            await self._queue.put(PromptRequest(request_id=request_id, kind=kind, payload=payload))
            return await fut

        try:
            return await _bounded(round_trip(), self.timeout, kind.value)
        finally:
            self._pending.pop(request_id, None)

    async def request_init_prompt(self, manifest: AppManifest) -> None:
        await self._exchange(PromptKind.INIT, manifest)

    async def request_consent(self, request: ConsentRequest) -> Grants:
        return await self._exchange(PromptKind.CONSENT, request)

    async def request_action_confirmation(self, request: ActionRequest) -> ActionResponse:
        return coerce_action_response(await self._exchange(PromptKind.ACTION, request))
