"""
Tests for chat turn mediation.
"""
import asyncio
import base64

import pytest

from chat_mediator import ChatTurn, TurnState, run_chat_turn
from config import HubConfig
from errors import AttachmentRejected, ExtractionFailure, GuardBlocked, UpstreamError
from file_extraction import ExtractedText, ExtractionReport
from llm_providers import ProviderAdapter, ProviderReply
from models import ChatMessage, ChatTurnRequest, FileAttachment, GuardConfig, GuardVerdict, ProviderId


ALLOW = GuardVerdict(allowed=True)
BLOCK = GuardVerdict(allowed=False, action="Block", reasons=["Prompt attack"], message="AI Guard blocked this content: Prompt attack")
GUARD_ON = GuardConfig(enabled=True, api_key="k")


class FakeAdapter(ProviderAdapter):
    provider_id = ProviderId.OLLAMA
    label = "Fake"

    def __init__(self, reply_text="hello back", native_documents=False, error=None):
        super().__init__(HubConfig())
        self.reply_text = reply_text
        self.native_documents = native_documents
        self.error = error
        self.calls = []

    async def send(self, *, endpoint, api_key, model, messages, attachments):
        self.calls.append({"messages": messages, "attachments": attachments, "model": model})
        if self.error is not None:
            raise self.error
        return ProviderReply(text=self.reply_text, model_id=f"{model}-resolved")


class FakeGuard:
    """Returns verdicts in order and records the texts it saw."""

    def __init__(self, *verdicts):
        self.verdicts = list(verdicts)
        self.texts = []

    async def __call__(self, text, guard_config):
        self.texts.append(text)
        return self.verdicts.pop(0)


def attachment(name, mime_type, payload=b"data"):
    return FileAttachment(name=name, mime_type=mime_type, size_bytes=len(payload), data=base64.b64encode(payload).decode())


def make_request(guard=None, attachments=None, content="hello"):
    return ChatTurnRequest(
        provider="ollama",
        model="llama3",
        messages=[ChatMessage(role="user", content=content)],
        attachments=attachments or [],
        guard=guard,
    )


async def no_extraction(attachments):
    return ExtractionReport()


class TestGuardGating:
    """Ordering of guard checks around the provider call."""

    def test_guard_disabled_skips_validation(self):
        adapter, guard = FakeAdapter(), FakeGuard()
        result = asyncio.run(run_chat_turn(make_request(), adapter=adapter, guard=guard))

        assert result.text == "hello back"
        assert result.model_id == "llama3-resolved"
        assert result.guard.input_validation is None
        assert result.guard.output_validation is None
        assert guard.texts == []
        assert len(adapter.calls) == 1

    def test_guard_config_present_but_disabled(self):
        guard = FakeGuard()
        asyncio.run(run_chat_turn(make_request(guard=GuardConfig(enabled=False, api_key="k")), adapter=FakeAdapter(), guard=guard))
        assert guard.texts == []

    def test_input_block_never_calls_provider(self):
        adapter, guard = FakeAdapter(), FakeGuard(BLOCK)

        with pytest.raises(GuardBlocked) as exc_info:
            asyncio.run(run_chat_turn(make_request(guard=GUARD_ON), adapter=adapter, guard=guard))

        assert exc_info.value.stage == "input"
        assert exc_info.value.verdict.reasons == ["Prompt attack"]
        assert adapter.calls == []

    def test_output_block_after_provider_call(self):
        adapter, guard = FakeAdapter(reply_text="secret"), FakeGuard(ALLOW, BLOCK)

        with pytest.raises(GuardBlocked) as exc_info:
            asyncio.run(run_chat_turn(make_request(guard=GUARD_ON), adapter=adapter, guard=guard))

        assert exc_info.value.stage == "output"
        assert exc_info.value.input_verdict == ALLOW
        assert len(adapter.calls) == 1
        assert guard.texts == ["hello", "secret"]

    def test_allowed_turn_carries_both_verdicts(self):
        guard = FakeGuard(ALLOW, ALLOW)
        result = asyncio.run(run_chat_turn(make_request(guard=GUARD_ON), adapter=FakeAdapter(), guard=guard))

        assert result.guard.input_validation == ALLOW
        assert result.guard.output_validation == ALLOW
        assert result.warnings == []

    def test_fail_open_warning_is_surfaced(self):
        warned = GuardVerdict(allowed=True, warning="AI Guard validation failed - proceeding without validation")
        result = asyncio.run(
            run_chat_turn(make_request(guard=GUARD_ON), adapter=FakeAdapter(), guard=FakeGuard(warned, ALLOW))
        )
        assert result.warnings == ["AI Guard validation failed - proceeding without validation"]

    def test_state_transitions(self):
        turn = ChatTurn(make_request(guard=GUARD_ON), FakeAdapter(), guard=FakeGuard(BLOCK), config=HubConfig())
        assert turn.state == TurnState.EXTRACTING
        with pytest.raises(GuardBlocked):
            asyncio.run(turn.run())
        assert turn.state == TurnState.BLOCKED

        turn = ChatTurn(make_request(), FakeAdapter(), config=HubConfig())
        asyncio.run(turn.run())
        assert turn.state == TurnState.DONE


class TestHistory:

    def test_caller_messages_are_not_mutated(self):
        request = make_request()
        turn = ChatTurn(request, FakeAdapter(), config=HubConfig())
        asyncio.run(turn.run())

        assert len(request.messages) == 1
        assert [m.role for m in turn.history] == ["user", "assistant"]
        assert turn.history[-1].content == "hello back"

    def test_given_adapter_is_used_without_registry_lookup(self, monkeypatch):
        def no_lookup(provider):
            raise AssertionError(f"unexpected adapter lookup for {provider}")

        monkeypatch.setattr("chat_mediator.get_adapter", no_lookup)
        adapter = FakeAdapter()
        asyncio.run(run_chat_turn(make_request(), adapter=adapter, guard=FakeGuard()))
        assert len(adapter.calls) == 1

    def test_upstream_error_propagates(self):
        adapter = FakeAdapter(error=UpstreamError(500, "model crashed"))
        with pytest.raises(UpstreamError):
            asyncio.run(run_chat_turn(make_request(), adapter=adapter, guard=FakeGuard()))


class TestAttachments:
    """PDF extraction and attachment forwarding."""

    def test_extracted_text_is_appended_and_guarded(self):
        async def extractor(attachments):
            return ExtractionReport(
                texts=[ExtractedText(filename="report.pdf", text="quarterly numbers")],
                failures=[ExtractionFailure("broken.pdf", "EOF marker not found")],
            )

        request = make_request(
            guard=GUARD_ON,
            attachments=[attachment("report.pdf", "application/pdf"), attachment("broken.pdf", "application/pdf")],
            content="summarize",
        )
        adapter, guard = FakeAdapter(), FakeGuard(ALLOW, ALLOW)
        result = asyncio.run(run_chat_turn(request, adapter=adapter, guard=guard, extractor=extractor))

        sent = adapter.calls[0]["messages"][-1].content
        assert sent.startswith("summarize")
        assert "--- BEGIN FILE: report.pdf ---\nquarterly numbers\n--- END FILE: report.pdf ---" in sent
        assert guard.texts[0] == sent
        assert result.warnings == ["Could not extract text from broken.pdf"]
        assert request.messages[-1].content == "summarize"

    def test_pdfs_forwarded_only_to_document_capable_providers(self):
        attachments = [
            attachment("cat.png", "image/png"),
            attachment("doc.pdf", "application/pdf"),
            attachment("data.csv", "text/csv"),
        ]

        plain = FakeAdapter(native_documents=False)
        asyncio.run(run_chat_turn(make_request(attachments=attachments), adapter=plain, extractor=no_extraction))
        assert [a.name for a in plain.calls[0]["attachments"]] == ["cat.png"]

        native = FakeAdapter(native_documents=True)
        asyncio.run(run_chat_turn(make_request(attachments=attachments), adapter=native, extractor=no_extraction))
        assert [a.name for a in native.calls[0]["attachments"]] == ["cat.png", "doc.pdf"]

    def test_oversized_attachment_is_rejected_before_any_call(self):
        adapter = FakeAdapter()
        turn = ChatTurn(
            make_request(attachments=[attachment("big.png", "image/png", b"0123456789")]),
            adapter,
            extractor=no_extraction,
            config=HubConfig(max_attachment_bytes=4),
        )
        with pytest.raises(AttachmentRejected):
            asyncio.run(turn.run())
        assert adapter.calls == []
