"""
Chat turn mediation.

A turn moves through EXTRACTING -> VALIDATING_INPUT -> CALLING -> VALIDATING_OUTPUT -> DONE,
leaving early for BLOCKED when AI Guard rejects the prompt or the reply.
"""
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from ai_guard import validate
from config import HubConfig, get_config
from errors import GuardBlocked
from file_extraction import (
    ExtractionReport,
    append_extracted_text,
    check_attachment_sizes,
    extract_pdf_texts,
    reduce_for_provider,
)
from llm_providers import ProviderAdapter, get_adapter
from models import (
    ChatMessage,
    ChatTurnRequest,
    ChatTurnResult,
    FileAttachment,
    GuardConfig,
    GuardResults,
    GuardVerdict,
)

logger = logging.getLogger(__name__)

GuardFn = Callable[[str, Optional[GuardConfig]], Awaitable[GuardVerdict]]
ExtractorFn = Callable[[List[FileAttachment]], Awaitable[ExtractionReport]]


class TurnState(str, Enum):
    EXTRACTING = "extracting"
    VALIDATING_INPUT = "validating_input"
    CALLING = "calling"
    VALIDATING_OUTPUT = "validating_output"
    DONE = "done"
    BLOCKED = "blocked"


class ChatTurn:
    """
    One chat turn over a private copy of the request history.
    The caller's message list is never mutated.
    """

    def __init__(
        self,
        request: ChatTurnRequest,
        adapter: ProviderAdapter,
        guard: GuardFn = validate,
        extractor: ExtractorFn = extract_pdf_texts,
        config: Optional[HubConfig] = None,
    ):
        self.request = request
        self.adapter = adapter
        self.guard = guard
        self.extractor = extractor
        self.config = config if config is not None else get_config()
        self.state = TurnState.EXTRACTING
        self.history: List[ChatMessage] = [m.model_copy() for m in request.messages]
        self.guard_results = GuardResults()
        self.warnings: List[str] = []

    @property
    def guarding_enabled(self) -> bool:
        return self.request.guard is not None and self.request.guard.enabled

    async def run(self) -> ChatTurnResult:
        await self._extract()

        if self.guarding_enabled:
            self.state = TurnState.VALIDATING_INPUT
            verdict = await self.guard(self.history[-1].content, self.request.guard)
            self.guard_results.input_validation = verdict
            self._note_warning(verdict)
            if not verdict.allowed:
                self.state = TurnState.BLOCKED
                raise GuardBlocked("input", verdict)

        self.state = TurnState.CALLING
        reply = await self.adapter.send(
            endpoint=self.request.endpoint,
            api_key=self.request.api_key,
            model=self.request.model,
            messages=list(self.history),
            attachments=reduce_for_provider(self.request.attachments, self.adapter.native_documents),
        )
        self.history.append(ChatMessage(role="assistant", content=reply.text))

        if self.guarding_enabled:
            self.state = TurnState.VALIDATING_OUTPUT
            verdict = await self.guard(reply.text, self.request.guard)
            self.guard_results.output_validation = verdict
            self._note_warning(verdict)
            if not verdict.allowed:
                self.state = TurnState.BLOCKED
                raise GuardBlocked("output", verdict, input_verdict=self.guard_results.input_validation)

        self.state = TurnState.DONE
        return ChatTurnResult(
            text=reply.text,
            model_id=reply.model_id,
            guard=self.guard_results,
            warnings=self.warnings,
        )

    async def _extract(self) -> None:
        attachments = self.request.attachments
        if not attachments:
            return
        check_attachment_sizes(attachments, self.config.max_attachment_bytes)
        report = await self.extractor(attachments)
        for failure in report.failures:
            self.warnings.append(f"Could not extract text from {failure.filename}")
        if report.texts:
            last = self.history[-1]
            self.history[-1] = ChatMessage(role=last.role, content=append_extracted_text(last.content, report.texts))

    def _note_warning(self, verdict: GuardVerdict) -> None:
        if verdict.warning:
            self.warnings.append(verdict.warning)


async def run_chat_turn(
    request: ChatTurnRequest,
    adapter: Optional[ProviderAdapter] = None,
    guard: GuardFn = validate,
    extractor: ExtractorFn = extract_pdf_texts,
) -> ChatTurnResult:
    """Run one mediated chat turn. Raises GuardBlocked, UpstreamError or AttachmentRejected."""
    start_time = time.time()
    if adapter is None:
        adapter = get_adapter(request.provider)
    turn = ChatTurn(request, adapter, guard=guard, extractor=extractor)
    try:
        return await turn.run()
    finally:
        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Chat turn provider={request.provider.value} model={request.model} "
            f"state={turn.state.value} guard={'on' if turn.guarding_enabled else 'off'} latency={latency_ms}ms"
        )
