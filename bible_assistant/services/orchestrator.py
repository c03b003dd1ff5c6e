# services/orchestrator.py
"""
Request orchestration: turns a user message into a grounded, safety-checked,
retried, streamed answer.

Pipeline per request:

    Preflight     safety classifier, inappropriate-request refusal,
                  optional moderation endpoint
    PromptBuild   verse grounding, remembered user context, preferences
    Attempt(n)    streamed completion; retryable failures back off and
                  try again, terminal failures propagate
    Finish        citation extraction + verification, title, follow-ups,
                  offline cache, conversation persistence, memory extraction

Generations run on a worker pool via start(); there is at most one in
flight per conversation, and starting a new one cancels the previous one.
The worker persists the final message even if the caller has gone away.
"""

import logging
import re
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.prompt import AssistantPreferences, build_system_prompt, build_verse_analysis_prompt
from ..utils.errors import AssistantError, CancelledError, NetworkError, RetryExhaustedError
from ..utils.http_retry import CancelToken, RetryPolicy, execute_with_retry
from ..utils.store import Store, load_json, save_json
from .cache.offline_cache import OfflineCache
from .followups import build_follow_up_prompt, merge_follow_ups, parse_follow_ups_from_text
from .llm_service import ChatProvider, Message, ModerationProvider
from .memory_extractor import MemoryExtractor
from .memory_service import MemoryStore
from .references.grounding import Citation, GroundingContext, GroundingRepository, VerificationStatus
from .references.reference_parser import ReferenceParser
from .safety.classifier import SafetyCategory, SafetyClassifier, SafetyResponse

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HISTORY_LIMIT = 10
PREMIUM_HISTORY_LIMIT = 25
TITLE_MIN_LENGTH = 5
TITLE_MAX_LENGTH = 60
TITLE_FALLBACK_LENGTH = 50
REFUSAL_FOLLOW_UPS = ["What topics would you like to explore in Scripture?"]
DEFAULT_MAX_WORKERS = 4

SHORTER_PROMPT = """Please provide a much shorter version of your previous response.

PREVIOUS RESPONSE TO CONDENSE:
{content}

KEY VERSES TO PRESERVE: {verses}

Requirements:
- Maximum 2-3 sentences
- Keep only the single most important Scripture reference
- Focus on the core takeaway
- Remove all elaboration"""

DEEPER_PROMPT = """Please go much deeper on the topic from your previous response.

PREVIOUS RESPONSE TO EXPAND:
{content}

VERSES ALREADY MENTIONED: {verses}

Please provide a comprehensive expansion including:
1. **Additional Scripture** - 3-5 more relevant passages I should study
2. **Historical Context** - What was happening when this was written? Who was the audience?
3. **Greek/Hebrew Insights** - Any significant word meanings in the original languages
4. **Theological Perspectives** - How do different Christian traditions view this?
5. **Practical Application** - Specific, actionable ways to apply this today
6. **Cross-References** - How does this connect to other biblical themes?

Take your time and be thorough."""

CONTINUE_PROMPT = """Your previous response was cut off. Continue it exactly where it stopped.

END OF PREVIOUS RESPONSE:
{tail}

Do not repeat what was already written and do not add a new introduction."""

CONTINUATION_TAIL_LENGTH = 800


class RequestType(Enum):
    NORMAL = "normal"
    DEEPER = "deeper"
    SHORTER = "shorter"
    FOLLOW_UP = "follow_up"
    CONTINUATION = "continuation"

    @property
    def token_limit(self) -> int:
        return _TOKEN_LIMITS[self]


_TOKEN_LIMITS = {
    RequestType.NORMAL: 1500,
    RequestType.DEEPER: 3000,
    RequestType.SHORTER: 800,
    RequestType.FOLLOW_UP: 300,
    RequestType.CONTINUATION: 1000,
}

# Derived requests wrap an earlier answer that has already been screened
SCREENED_REQUEST_TYPES = (RequestType.NORMAL, RequestType.FOLLOW_UP)


class ResultStatus(Enum):
    COMPLETED = "completed"
    SAFETY = "safety"
    REFUSED = "refused"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass
class AssistantRequest:
    message: str
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    mode: str = "study"
    translation: Optional[str] = None
    request_type: RequestType = RequestType.NORMAL
    history: Optional[List[Dict[str, str]]] = None   # None: read from the conversation store
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    with_follow_ups: bool = True


@dataclass
class AssistantResult:
    status: ResultStatus
    content: str = ""
    title: str = ""
    mode: str = "study"
    citations: List[Citation] = field(default_factory=list)
    follow_ups: List[str] = field(default_factory=list)
    attempts: int = 0
    safety_response: Optional[SafetyResponse] = None
    from_cache: bool = False
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def verified_citations(self) -> List[Citation]:
        return [c for c in self.citations if c.verification_status is VerificationStatus.VERIFIED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "content": self.content,
            "title": self.title,
            "mode": self.mode,
            "citations": [c.to_dict() for c in self.citations],
            "follow_ups": list(self.follow_ups),
            "attempts": self.attempts,
            "safety_response": self.safety_response.to_dict() if self.safety_response else None,
            "from_cache": self.from_cache,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "request_id": self.request_id,
        }


@dataclass
class GenerationContext:
    """What the worker needs to finish and persist a generation on its own."""
    conversation_id: str
    message_id: str
    request_id: str
    user_message: str
    mode: str
    buffer: List[str] = field(default_factory=list)
    sink_detached: bool = False

    @property
    def accumulated(self) -> str:
        return "".join(self.buffer)


class GenerationHandle:
    """A generation running on the worker pool."""

    def __init__(self, conversation_id: str, cancel_token: CancelToken, future: Future):
        self.conversation_id = conversation_id
        self.cancel_token = cancel_token
        self.future = future

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> AssistantResult:
        return self.future.result(timeout=timeout)


# ---------------------------------------------------------------------------
# Conversation persistence
# ---------------------------------------------------------------------------

class ConversationStore:
    """Conversation messages kept as one JSON list per conversation."""

    KEY_PREFIX = "conversation:"

    def __init__(self, store: Store):
        self.store = store
        self._lock = threading.RLock()

    def _key(self, conversation_id: str) -> str:
        return f"{self.KEY_PREFIX}{conversation_id}"

    def messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return load_json(self.store, self._key(conversation_id), default=[])

    def has_message(self, conversation_id: str, request_id: str) -> bool:
        return any(m.get("request_id") == request_id for m in self.messages(conversation_id))

    def save_message(self, conversation_id: str, message: Dict[str, Any]) -> bool:
        """
        Append a message. Returns False (and stores nothing) when a message
        with the same request_id is already present.
        """
        with self._lock:
            messages = self.messages(conversation_id)
            request_id = message.get("request_id")
            if request_id and any(m.get("request_id") == request_id for m in messages):
                logger.debug(f"Message for request {request_id} already saved")
                return False
            messages.append(message)
            save_json(self.store, self._key(conversation_id), messages)
        return True

    def history(self, conversation_id: str, limit: int = HISTORY_LIMIT) -> List[Message]:
        """Last `limit` turns as chat messages."""
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in self.messages(conversation_id)
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        return turns[-limit:] if limit else []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_title(content: str) -> str:
    """First sentence when it is a reasonable length, else the first 50 characters."""
    trimmed = (content or "").strip()
    dot = trimmed.find(".")
    if dot >= 0:
        first_sentence = trimmed[:dot]
        if TITLE_MIN_LENGTH < len(first_sentence) < TITLE_MAX_LENGTH:
            return first_sentence
    if len(trimmed) > TITLE_FALLBACK_LENGTH:
        return trimmed[:TITLE_FALLBACK_LENGTH] + "..."
    return trimmed or "Response"


def build_messages(system_prompt: str, history: List[Message], user_message: str, limit: int = HISTORY_LIMIT) -> List[Message]:
    messages = [{"role": "system", "content": system_prompt}]
    if limit:
        messages.extend({"role": m["role"], "content": m["content"]} for m in history[-limit:])
    messages.append({"role": "user", "content": user_message})
    return messages


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class RequestOrchestrator:
    def __init__(
        self,
        chat: ChatProvider,
        parser: Optional[ReferenceParser] = None,
        classifier: Optional[SafetyClassifier] = None,
        grounding: Optional[GroundingRepository] = None,
        memory_store: Optional[MemoryStore] = None,
        offline_cache: Optional[OfflineCache] = None,
        conversations: Optional[ConversationStore] = None,
        moderation: Optional[ModerationProvider] = None,
        preferences: Optional[AssistantPreferences] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.chat = chat
        self.parser = parser or ReferenceParser()
        self.classifier = classifier or SafetyClassifier()
        self.grounding = grounding
        self.memory_store = memory_store
        self.memory_extractor = MemoryExtractor(memory_store, self.parser) if memory_store else None
        self.offline_cache = offline_cache
        self.conversations = conversations
        self.moderation = moderation
        self.preferences = preferences or AssistantPreferences()
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="generation")
        self._active: Dict[str, GenerationHandle] = {}
        self._active_lock = threading.Lock()

    # ---- background generation ----

    def start(
        self,
        request: AssistantRequest,
        token_sink: Optional[Callable[[str], None]] = None,
        on_retry: Optional[Callable[[int, int], None]] = None,
    ) -> GenerationHandle:
        """Run send_message on the worker pool, cancelling any generation already running for the conversation."""
        cancel_token = CancelToken()
        with self._active_lock:
            previous = self._active.get(request.conversation_id)
            if previous is not None and not previous.done():
                logger.info(f"Cancelling previous generation for conversation {request.conversation_id}")
                previous.cancel()

            future = self._executor.submit(self.send_message, request, token_sink, on_retry, cancel_token)
            handle = GenerationHandle(request.conversation_id, cancel_token, future)
            self._active[request.conversation_id] = handle

        future.add_done_callback(lambda _: self._release(handle))
        return handle

    def _release(self, handle: GenerationHandle) -> None:
        with self._active_lock:
            if self._active.get(handle.conversation_id) is handle:
                del self._active[handle.conversation_id]

    def cancel(self, conversation_id: str) -> bool:
        with self._active_lock:
            handle = self._active.get(conversation_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_generating(self, conversation_id: str) -> bool:
        with self._active_lock:
            handle = self._active.get(conversation_id)
        return handle is not None and not handle.done()

    def shutdown(self, wait: bool = True) -> None:
        with self._active_lock:
            for handle in self._active.values():
                handle.cancel()
        self._executor.shutdown(wait=wait)

    # ---- main pipeline ----

    def send_message(
        self,
        request: AssistantRequest,
        token_sink: Optional[Callable[[str], None]] = None,
        on_retry: Optional[Callable[[int, int], None]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AssistantResult:
        """
        Run one request to completion.

        Returns an AssistantResult whose status is completed, safety,
        refused or cancelled. Terminal provider errors and exhausted retries
        propagate as AssistantError subclasses.
        """
        cancel_token = cancel_token or CancelToken()
        translation = request.translation or self.preferences.translation
        history = self._history_for(request)

        def result(status: ResultStatus, **kwargs) -> AssistantResult:
            return AssistantResult(
                status=status,
                mode=request.mode,
                conversation_id=request.conversation_id,
                message_id=request.message_id,
                request_id=request.request_id,
                **kwargs,
            )

        # ---- preflight ----
        grief_note = ""
        if request.request_type in SCREENED_REQUEST_TYPES:
            safety = self.classifier.check(request.message, history)
            if safety.is_triggered:
                logger.info(f"Safety response ({safety.category.value}) for conversation {request.conversation_id}")
                return result(ResultStatus.SAFETY, content=safety.response.message, safety_response=safety.response)
            if safety.category is SafetyCategory.GRIEF_LOSS:
                grief_note = self.classifier.grief_acknowledgment()

            if self.classifier.is_inappropriate_request(request.message) or self._flagged_by_moderation(request.message):
                return result(
                    ResultStatus.REFUSED,
                    content=self.classifier.refusal_message,
                    title="Unable to Help",
                    follow_ups=list(REFUSAL_FOLLOW_UPS),
                )

        if cancel_token.is_cancelled:
            return result(ResultStatus.CANCELLED)

        # ---- prompt ----
        grounding = self._grounding_for(request.message, translation)
        system_prompt = build_system_prompt(
            mode=request.mode,
            grounding_text=grounding.format_for_prompt(),
            request_type=request.request_type.value,
            preferences=self.preferences,
            memory_context=self._memory_context_for(request.message),
            grief_acknowledgment=grief_note,
        )
        messages = build_messages(system_prompt, history, request.message, limit=self.history_limit)

        # ---- attempts ----
        context = GenerationContext(
            conversation_id=request.conversation_id,
            message_id=request.message_id,
            request_id=request.request_id,
            user_message=request.message,
            mode=request.mode,
        )

        def on_token(token: str) -> None:
            context.buffer.append(token)
            if token_sink is None or context.sink_detached:
                return
            try:
                token_sink(token)
            except Exception as e:
                # The caller went away; keep generating so the answer is still persisted
                logger.warning(f"Token sink failed for request {request.request_id}, detaching it: {e}")
                context.sink_detached = True

        def attempt(n: int) -> str:
            context.buffer.clear()
            if n > 1:
                logger.info(f"Attempt {n}/{self.policy.max_attempts} for request {request.request_id}")
            return self.chat.stream_completion(
                messages,
                max_tokens=self._token_limit(request.request_type),
                on_token=on_token,
                cancel_token=cancel_token,
            )

        try:
            outcome = execute_with_retry(
                attempt,
                policy=self.policy,
                on_retry=on_retry,
                cancel_token=cancel_token,
                sleep=self.sleep,
            )
        except CancelledError:
            logger.info(f"Generation cancelled for conversation {request.conversation_id}")
            return result(ResultStatus.CANCELLED)
        except RetryExhaustedError as e:
            cached = self._offline_fallback(request, e)
            if cached is None:
                raise
            return cached

        content = outcome.value

        # ---- finish ----
        citations = self.extract_citations(content, translation)
        follow_ups = []
        if request.with_follow_ups and not cancel_token.is_cancelled:
            follow_ups = self.generate_follow_ups(request.message, content, request.mode)

        final = result(
            ResultStatus.COMPLETED,
            content=content,
            title=generate_title(content),
            citations=citations,
            follow_ups=follow_ups,
            attempts=outcome.attempts,
        )

        self._cache_response(request, final)
        self._persist(request, final)
        self._extract_memories(request, final)
        return final

    # ---- preflight helpers ----

    def _flagged_by_moderation(self, text: str) -> bool:
        if self.moderation is None:
            return False
        try:
            moderation = self.moderation.moderate(text)
        except AssistantError as e:
            logger.warning(f"Moderation check failed, continuing without it: {e}")
            return False
        if moderation.flagged:
            logger.info(f"Moderation flagged message: {', '.join(moderation.flagged_categories)}")
        return moderation.flagged

    # ---- prompt helpers ----

    @property
    def history_limit(self) -> int:
        return PREMIUM_HISTORY_LIMIT if self.preferences.is_premium else HISTORY_LIMIT

    def _history_for(self, request: AssistantRequest) -> List[Message]:
        if request.history is not None:
            return list(request.history)[-self.history_limit:]
        if self.conversations is not None:
            return self.conversations.history(request.conversation_id, self.history_limit)
        return []

    def _grounding_for(self, text: str, translation: str) -> GroundingContext:
        if self.grounding is None:
            return GroundingContext()
        return self.grounding.build_grounding_context(text, translation)

    def _memory_context_for(self, query: str) -> str:
        if not self.preferences.memory_enabled or self.memory_store is None:
            return ""
        try:
            return self.memory_store.build_context(query).format_for_prompt()
        except AssistantError as e:
            logger.warning(f"Memory context unavailable: {e}")
            return ""

    def _token_limit(self, request_type: RequestType) -> int:
        if request_type is RequestType.NORMAL:
            return self.preferences.preferred_token_limit
        return request_type.token_limit

    def build_system_prompt(self, request: AssistantRequest, grounding: Optional[GroundingContext] = None) -> str:
        """System prompt for `request` as send_message would build it (without safety preflight)."""
        translation = request.translation or self.preferences.translation
        grounding = grounding if grounding is not None else self._grounding_for(request.message, translation)
        return build_system_prompt(
            mode=request.mode,
            grounding_text=grounding.format_for_prompt(),
            request_type=request.request_type.value,
            preferences=self.preferences,
            memory_context=self._memory_context_for(request.message),
        )

    def build_messages(self, request: AssistantRequest, system_prompt: Optional[str] = None) -> List[Message]:
        system_prompt = system_prompt if system_prompt is not None else self.build_system_prompt(request)
        return build_messages(system_prompt, self._history_for(request), request.message, limit=self.history_limit)

    # ---- post-processing ----

    def extract_citations(self, text: str, translation: Optional[str] = None) -> List[Citation]:
        """
        Valid references in `text`, resolved against the chapter source
        when one is configured. Failed citations are dropped.
        """
        translation = translation or self.preferences.translation
        citations = []
        for ref in self.parser.parse_all(text):
            check = self.parser.validate(ref)
            if not check.valid:
                logger.info(f"Filtering citation '{ref.canonical_reference}': {check.reason}")
                continue
            citations.append(Citation.from_reference(ref, translation))

        if self.grounding is not None and citations:
            citations = self.grounding.resolve_batch(citations, translation)

        return [c for c in citations if c.verification_status is not VerificationStatus.FAILED]

    def generate_follow_ups(self, question: str, answer: str, mode: str) -> List[str]:
        """Three follow-up questions; model-generated when possible, topped up locally."""
        parsed = []
        try:
            text = self.chat.complete(
                [
                    {"role": "system", "content": build_follow_up_prompt(question, answer, mode)},
                    {"role": "user", "content": "Generate the follow-up questions."},
                ],
                max_tokens=RequestType.FOLLOW_UP.token_limit,
            )
            parsed = parse_follow_ups_from_text(text)
        except (AssistantError, requests.RequestException) as e:
            logger.warning(f"Follow-up generation failed, using local fallback: {e}")

        if not parsed:
            logger.debug("No usable follow-ups from model, using local fallback")
        return merge_follow_ups(parsed, answer, mode, self.parser)

    def _cache_response(self, request: AssistantRequest, final: AssistantResult) -> None:
        if self.offline_cache is None or request.request_type is not RequestType.NORMAL:
            return
        self.offline_cache.put(
            request.message,
            final.content,
            mode=request.mode,
            title=final.title,
            citations=[c.reference for c in final.citations],
            follow_ups=final.follow_ups,
        )

    def _offline_fallback(self, request: AssistantRequest, error: RetryExhaustedError) -> Optional[AssistantResult]:
        if self.offline_cache is None or not isinstance(error.last_error, NetworkError):
            return None
        cached = self.offline_cache.get(request.message)
        if cached is None:
            return None

        logger.warning(f"Network unavailable, answering from offline cache ({error.attempts} attempts failed)")
        translation = request.translation or self.preferences.translation
        return AssistantResult(
            status=ResultStatus.COMPLETED,
            content=cached.answer,
            title=cached.title or generate_title(cached.answer),
            mode=cached.mode or request.mode,
            citations=[Citation(reference=ref, translation_id=translation) for ref in cached.citations],
            follow_ups=list(cached.follow_ups),
            attempts=error.attempts,
            from_cache=True,
            conversation_id=request.conversation_id,
            message_id=request.message_id,
            request_id=request.request_id,
        )

    def _persist(self, request: AssistantRequest, final: AssistantResult) -> None:
        if self.conversations is None:
            return
        if self.conversations.has_message(request.conversation_id, request.request_id):
            logger.debug(f"Response for request {request.request_id} already persisted")
            return

        now = datetime.now().isoformat()
        self.conversations.save_message(request.conversation_id, {
            "id": f"{request.message_id}-user",
            "role": "user",
            "content": request.message,
            "timestamp": now,
            "request_id": f"{request.request_id}-user",
        })
        self.conversations.save_message(request.conversation_id, {
            "id": request.message_id,
            "role": "assistant",
            "content": final.content,
            "title": final.title,
            "mode": request.mode,
            "citations": [c.to_dict() for c in final.citations],
            "follow_ups": list(final.follow_ups),
            "timestamp": now,
            "request_id": request.request_id,
        })
        logger.info(f"Persisted response for conversation {request.conversation_id}")

    def _extract_memories(self, request: AssistantRequest, final: AssistantResult) -> None:
        if self.memory_extractor is None or not self.preferences.memory_enabled:
            return
        if request.request_type is not RequestType.NORMAL:
            return
        self.memory_extractor.process_conversation_turn(
            request.message,
            final.content,
            message_id=request.message_id,
            conversation_id=request.conversation_id,
        )

    # ---- derived requests ----

    @staticmethod
    def _verse_list(citations: Optional[List[Citation]], empty: str) -> str:
        refs = [c.reference for c in citations or []]
        return ", ".join(refs) if refs else empty

    def _derived(self, prompt: str, request_type: RequestType, conversation_id: str, mode: str,
                 translation: Optional[str], history: Optional[List[Message]], **send_kwargs) -> AssistantResult:
        request = AssistantRequest(
            message=prompt,
            conversation_id=conversation_id,
            mode=mode,
            translation=translation,
            request_type=request_type,
            history=history,
        )
        return self.send_message(request, **send_kwargs)

    def request_shorter(
        self,
        previous_content: str,
        previous_citations: Optional[List[Citation]] = None,
        conversation_id: Optional[str] = None,
        mode: str = "study",
        translation: Optional[str] = None,
        history: Optional[List[Message]] = None,
        **send_kwargs,
    ) -> AssistantResult:
        prompt = SHORTER_PROMPT.format(
            content=previous_content,
            verses=self._verse_list(previous_citations, "None specified"),
        )
        return self._derived(prompt, RequestType.SHORTER, conversation_id or str(uuid.uuid4()),
                             mode, translation, history, **send_kwargs)

    def request_deeper(
        self,
        previous_content: str,
        previous_citations: Optional[List[Citation]] = None,
        conversation_id: Optional[str] = None,
        mode: str = "study",
        translation: Optional[str] = None,
        history: Optional[List[Message]] = None,
        **send_kwargs,
    ) -> AssistantResult:
        prompt = DEEPER_PROMPT.format(
            content=previous_content,
            verses=self._verse_list(previous_citations, "None"),
        )
        return self._derived(prompt, RequestType.DEEPER, conversation_id or str(uuid.uuid4()),
                             mode, translation, history, **send_kwargs)

    def continue_response(
        self,
        previous_content: str,
        conversation_id: Optional[str] = None,
        mode: str = "study",
        translation: Optional[str] = None,
        history: Optional[List[Message]] = None,
        **send_kwargs,
    ) -> AssistantResult:
        """Ask the model to pick up a truncated answer where it stopped."""
        tail = re.sub(r"\s+", " ", previous_content[-CONTINUATION_TAIL_LENGTH:]).strip()
        prompt = CONTINUE_PROMPT.format(tail=tail)
        return self._derived(prompt, RequestType.CONTINUATION, conversation_id or str(uuid.uuid4()),
                             mode, translation, history, **send_kwargs)

    def analyze_verse(
        self,
        reference: str,
        analysis_type: str = "context_meaning",
        translation: Optional[str] = None,
        conversation_id: Optional[str] = None,
        **send_kwargs,
    ) -> AssistantResult:
        """
        Study-mode analysis of one verse. The verse text is resolved through
        the grounding repository when available.
        """
        translation = translation or self.preferences.translation
        ref = self.parser.parse(reference)
        if ref is None or not self.parser.validate(ref).valid:
            raise AssistantError(f"Invalid verse reference: {reference}", status_code=400)

        text = ""
        if self.grounding is not None:
            resolved = self.grounding.resolve_citation(Citation.from_reference(ref, translation), translation)
            text = resolved.resolved_text or ""

        prompt = build_verse_analysis_prompt(ref.canonical_reference, text, translation, analysis_type)
        return self._derived(prompt, RequestType.DEEPER, conversation_id or str(uuid.uuid4()),
                             "study", translation, [], **send_kwargs)
