from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from timeline_chat.agents.composer import (
    ChatResult,
    compose_counting_text,
    compose_guard_reply,
    compose_reply,
)
from timeline_chat.agents.grounding import (
    dedupe_occurrences,
    has_headings_in_order,
    parse_counting_extraction,
    parse_router_decision,
    parse_synthesis_plan,
)
from timeline_chat.agents.originals import (
    build_opened_record,
    open_originals,
    select_original_refs,
)
from timeline_chat.agents import prompting
from timeline_chat.config import settings
from timeline_chat.context.loader import ContextPack, build_context_pack
from timeline_chat.context.matcher import RECENT_PLACEHOLDER, is_counting_question
from timeline_chat.context.ranker import RankerConfig
from timeline_chat.llm_errors import ProviderError
from timeline_chat.models.artifacts import OpenedOriginal
from timeline_chat.models.grounding import RouterDecision
from timeline_chat.models.interfaces import (
    ArtifactStore,
    LLMGateway,
    LLMMessage,
    LLMRequest,
    MetadataStore,
    OriginalsFetcher,
)
from timeline_chat.models.schemas import ChatRequest, ChatSettings
from timeline_chat.services.logger import log_chat_step, log_event


STUB_PROVIDER = "stub"
STUB_MODEL = "stub"


class ChatStateError(RuntimeError):
    """A state handler ran without the data an earlier state should have set."""


class ChatState(str, Enum):
    IDLE = "idle"
    MATCHING = "matching"
    NO_SOURCES = "no_sources"
    MATCHED = "matched"
    FIRST_PASS = "first_pass"
    COUNTING_PASS = "counting_pass"
    ROUTER_PARSED = "router_parsed"
    ORIGINALS_PASS = "originals_pass"
    SYNTHESIS_PASS = "synthesis_pass"
    DONE = "done"


@dataclass
class ChatRun:
    """Mutable state of one chat request, discarded after the reply is built."""

    request: ChatRequest
    settings: ChatSettings
    folder: str
    is_admin: bool
    request_id: str
    provider: str
    model: str
    query: str = ""
    pack: ContextPack | None = None
    guard_message: str = ""
    first_text: str = ""
    decision: RouterDecision | None = None
    final_text: str = ""
    originals: list[OpenedOriginal] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    llm_calls: int = 0
    result: ChatResult | None = None

    @property
    def context_text(self) -> str:
        return self.pack.packed.text if self.pack else ""

    @property
    def source_count(self) -> int:
        return len(self.pack.packed.source_index) if self.pack else 0


class ChatOrchestrator:
    """Drives one chat request through matching, LLM passes and composition.

    Flow:
      1. Build the context pack (MATCHING); stop early without sources
      2. Ask the router for a grounded answer (FIRST_PASS), or for discrete
         occurrences when the question is a counting question (COUNTING_PASS)
      3. Parse the router decision (ROUTER_PARSED)
      4. Optionally open originals and answer again (ORIGINALS_PASS), or
         build a synthesis plan and write-up (SYNTHESIS_PASS)
      5. Compose the reply with validated citations (DONE)

    Each state handler returns the next state.
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        metadata_store: MetadataStore,
        originals_fetcher: OriginalsFetcher,
        gateway: LLMGateway,
        *,
        ranker_config: RankerConfig | None = None,
        max_context_chars: int | None = None,
        max_snippet_chars: int | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.artifact_store = artifact_store
        self.metadata_store = metadata_store
        self.originals_fetcher = originals_fetcher
        self.gateway = gateway
        self.ranker_config = ranker_config or RankerConfig.from_settings()
        self.max_context_chars = max(int(max_context_chars or settings.max_context_chars), 1)
        self.max_snippet_chars = max(int(max_snippet_chars or settings.max_snippet_chars), 1)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._handlers: dict[ChatState, Callable[[ChatRun], Awaitable[ChatState]]] = {
            ChatState.IDLE: self._idle,
            ChatState.MATCHING: self._matching,
            ChatState.NO_SOURCES: self._no_sources,
            ChatState.MATCHED: self._matched,
            ChatState.FIRST_PASS: self._first_pass,
            ChatState.COUNTING_PASS: self._counting_pass,
            ChatState.ROUTER_PARSED: self._router_parsed,
            ChatState.ORIGINALS_PASS: self._originals_pass,
            ChatState.SYNTHESIS_PASS: self._synthesis_pass,
        }

    async def chat(
        self,
        request: ChatRequest,
        chat_settings: ChatSettings,
        *,
        folder: str,
        is_admin: bool = False,
        request_id: str | None = None,
    ) -> ChatResult:
        run = ChatRun(
            request=request,
            settings=chat_settings,
            folder=folder,
            is_admin=is_admin,
            request_id=request_id or str(uuid.uuid4()),
            provider=chat_settings.provider,
            model=chat_settings.model,
        )
        state = ChatState.IDLE
        while state is not ChatState.DONE:
            next_state = await self._handlers[state](run)
            log_chat_step(run.request_id, state.value, "ok", {"next": next_state.value})
            state = next_state

        if run.result is None:
            raise ChatStateError(f"Chat {run.request_id} finished without a reply")
        logger.info(
            f"Chat {run.request_id} done: provider={run.result.provider} "
            f"llm_calls={run.llm_calls} citations={len(run.result.citations)}"
        )
        return run.result

    # --- States ---

    async def _idle(self, run: ChatRun) -> ChatState:
        run.query = run.request.message.strip() or RECENT_PLACEHOLDER
        return ChatState.MATCHING

    async def _matching(self, run: ChatRun) -> ChatState:
        run.pack = await build_context_pack(
            run.request.message,
            folder=run.folder,
            artifact_store=self.artifact_store,
            metadata_store=self.metadata_store,
            max_context_items=run.settings.max_context_items,
            synthesis_mode=run.request.synthesis_mode,
            max_context_chars=self.max_context_chars,
            max_snippet_chars=self.max_snippet_chars,
            ranker_config=self.ranker_config,
            now=self._now(),
        )
        summary_count = run.pack.summary_count
        log_chat_step(
            run.request_id,
            ChatState.MATCHING.value,
            "packed",
            {
                "summaries": summary_count,
                "sources": run.source_count,
                "matched": run.pack.matched_count,
                "recent_mode": run.pack.recent_mode,
                "fallback": run.pack.fallback_used,
            },
        )
        if summary_count == 0:
            run.guard_message = prompting.message("no_sources")
            return ChatState.NO_SOURCES
        if run.request.synthesis_mode and summary_count < 2:
            run.guard_message = prompting.message("need_two_sources")
            return ChatState.NO_SOURCES
        return ChatState.MATCHED

    async def _no_sources(self, run: ChatRun) -> ChatState:
        run.result = compose_guard_reply(
            run.guard_message,
            provider=run.provider,
            model=run.model,
            request_id=run.request_id,
        )
        return ChatState.DONE

    async def _matched(self, run: ChatRun) -> ChatState:
        if not run.request.synthesis_mode and is_counting_question(run.request.message):
            return ChatState.COUNTING_PASS
        return ChatState.FIRST_PASS

    async def _first_pass(self, run: ChatRun) -> ChatState:
        messages = prompting.build_router_messages(
            run.context_text, run.query, _require_pack(run).packed.source_index
        )
        run.first_text = await self._call_with_fallback(
            run, self._system_prompt(run), messages, caller="router"
        )
        return ChatState.ROUTER_PARSED

    async def _router_parsed(self, run: ChatRun) -> ChatState:
        request = run.request
        if run.provider == STUB_PROVIDER:
            run.decision = RouterDecision(answer=run.first_text)
        else:
            run.decision = parse_router_decision(run.first_text, run.source_count)
            if run.decision is None:
                logger.warning(f"Chat {run.request_id}: router output unparseable, using canned reply")
                run.decision = RouterDecision(
                    answer=prompting.canned_fallback(
                        advisor_mode=request.advisor_mode,
                        synthesis_mode=request.synthesis_mode,
                    )
                )
        run.final_text = run.decision.answer

        if run.decision.needs_originals and not request.allow_originals:
            run.notes.append(prompting.message("originals_disabled_note"))

        if request.synthesis_mode and run.provider != STUB_PROVIDER:
            return ChatState.SYNTHESIS_PASS
        if run.decision.needs_originals and request.allow_originals and not request.synthesis_mode:
            return ChatState.ORIGINALS_PASS
        self._compose(run)
        return ChatState.DONE

    async def _originals_pass(self, run: ChatRun) -> ChatState:
        decision = _require_decision(run)
        refs = select_original_refs(
            decision.requested_artifact_ids,
            _require_pack(run).packed.source_index,
            settings.originals_max_items,
        )
        if not refs:
            logger.info(f"Chat {run.request_id}: router requested no known artifacts")
            self._compose(run)
            return ChatState.DONE

        started_at = self._now()
        outcome = await open_originals(refs, self.originals_fetcher)
        run.notes.extend(outcome.notes)
        log_chat_step(
            run.request_id,
            ChatState.ORIGINALS_PASS.value,
            outcome.status,
            {"opened": len(outcome.opened), "failed": len(outcome.failed), "truncated": outcome.truncated_count},
        )

        if outcome.opened:
            messages = prompting.build_originals_messages(run.context_text, run.query, outcome.opened)
            try:
                response = await self._call(
                    run, self._system_prompt(run, with_originals=True), messages, caller="originals"
                )
            except ProviderError as exc:
                logger.warning(f"Chat {run.request_id}: originals pass failed ({exc.code}), keeping router answer")
                run.notes.append(prompting.message("originals_failed_note"))
            else:
                if response.strip():
                    run.final_text = response
                    run.originals = outcome.opened
                else:
                    run.notes.append(prompting.message("originals_failed_note"))

        await self._record_originals(run, started_at, outcome)
        self._compose(run)
        return ChatState.DONE

    async def _synthesis_pass(self, run: ChatRun) -> ChatState:
        plan_messages = prompting.build_synthesis_plan_messages(run.context_text, run.query, run.source_count)
        system_prompt = self._system_prompt(run)
        try:
            plan_text = await self._call(run, system_prompt, plan_messages, caller="synthesis_plan")
            plan = parse_synthesis_plan(plan_text, run.source_count)
            if plan is None:
                logger.warning(f"Chat {run.request_id}: synthesis plan unparseable, keeping router answer")
            else:
                log_event(
                    "synthesis_plan",
                    "Synthesis plan parsed",
                    request_id=run.request_id,
                    entities=len(plan.entities),
                    events=len(plan.events),
                )
                writeup_messages = prompting.build_synthesis_writeup_messages(run.context_text, run.query, plan)
                writeup = await self._call(run, system_prompt, writeup_messages, caller="synthesis_writeup")
                if has_headings_in_order(writeup, prompting.headings("synthesis")):
                    run.final_text = writeup
                else:
                    logger.warning(f"Chat {run.request_id}: synthesis write-up missing headings, keeping router answer")
        except ProviderError as exc:
            logger.warning(f"Chat {run.request_id}: synthesis pass failed ({exc.code}), keeping router answer")

        self._compose(run)
        return ChatState.DONE

    async def _counting_pass(self, run: ChatRun) -> ChatState:
        messages = prompting.build_counting_messages(run.context_text, run.query, run.source_count)
        text = await self._call_with_fallback(run, self._system_prompt(run), messages, caller="counting")
        source_index = _require_pack(run).packed.source_index

        if run.provider == STUB_PROVIDER:
            run.decision = RouterDecision(answer=text)
            run.final_text = text
            self._compose(run)
            return ChatState.DONE

        extraction = parse_counting_extraction(text, run.source_count)
        if extraction is None:
            logger.warning(f"Chat {run.request_id}: counting output unparseable")
            occurrences = []
        else:
            occurrences = dedupe_occurrences(extraction.occurrences)
        reply, cited = compose_counting_text(occurrences)
        log_chat_step(
            run.request_id,
            ChatState.COUNTING_PASS.value,
            "counted",
            {"occurrences": len(occurrences), "cited": cited},
        )
        run.result = compose_reply(
            reply,
            source_index,
            provider=run.provider,
            model=run.model,
            request_id=run.request_id,
            only_cited=cited,
            needs_originals=not occurrences and not run.request.allow_originals,
        )
        return ChatState.DONE

    # --- Helpers ---

    def _system_prompt(self, run: ChatRun, *, with_originals: bool = False) -> str:
        return prompting.build_system_prompt(
            run.settings,
            advisor_mode=run.request.advisor_mode,
            synthesis_mode=run.request.synthesis_mode,
            with_originals=with_originals,
        )

    def _compose(self, run: ChatRun) -> None:
        decision = _require_decision(run)
        run.result = compose_reply(
            run.final_text,
            _require_pack(run).packed.source_index,
            provider=run.provider,
            model=run.model,
            request_id=run.request_id,
            originals=run.originals,
            notes=run.notes,
            suggested_actions=decision.suggested_actions,
            needs_originals=decision.needs_originals and not run.request.allow_originals,
        )

    async def _call(
        self,
        run: ChatRun,
        system_prompt: str,
        messages: list[LLMMessage],
        *,
        caller: str,
    ) -> str:
        request = LLMRequest(
            model=run.model,
            system_prompt=system_prompt,
            messages=messages,
            temperature=run.settings.temperature,
            query=run.query,
            context_items=run.source_count,
        )
        run.llm_calls += 1
        response = await self.gateway.call(run.provider, request, caller=caller)
        return response.text

    async def _call_with_fallback(
        self,
        run: ChatRun,
        system_prompt: str,
        messages: list[LLMMessage],
        *,
        caller: str,
    ) -> str:
        """First-pass call; a non-admin without provider credentials gets the stub."""
        try:
            return await self._call(run, system_prompt, messages, caller=caller)
        except ProviderError as exc:
            if exc.code != "not_configured" or run.is_admin or run.provider == STUB_PROVIDER:
                raise
            log_event(
                "provider_fallback",
                f"{run.provider} not configured, falling back to stub",
                request_id=run.request_id,
                provider=run.provider,
            )
            run.provider = STUB_PROVIDER
            run.model = STUB_MODEL
            return await self._call(run, system_prompt, messages, caller=caller)

    async def _record_originals(self, run: ChatRun, started_at: datetime, outcome) -> None:
        try:
            await self.metadata_store.record_originals_opened(
                run.folder, build_opened_record(run.request_id, started_at, outcome)
            )
        except Exception as exc:
            logger.warning(f"Chat {run.request_id}: failed to record originals run: {exc}")


def _require_pack(run: ChatRun) -> ContextPack:
    if run.pack is None:
        raise ChatStateError(f"Chat {run.request_id}: no context pack built")
    return run.pack


def _require_decision(run: ChatRun) -> RouterDecision:
    if run.decision is None:
        raise ChatStateError(f"Chat {run.request_id}: no answer decision made")
    return run.decision
