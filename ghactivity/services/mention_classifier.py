"""OpenAI-backed classification of unanswered mentions.

Each pending mention is asked one question: does it expect an answer from
the mentioned user? Verdicts are stored per ``(comment, mentioned user)``
together with the prompt version and a hash of the comment body, so a
re-run only re-evaluates mentions whose text or prompt changed.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from datetime import datetime
from typing import Any

import httpx

from ghactivity import config
from ghactivity.date_utils import utc_now
from ghactivity.db.factory import get_mention_classification_repository
from ghactivity.observability import record_classifier_batch, start_span
from ghactivity.services.attention import DEFAULT_UNANSWERED_MENTION_DAYS, find_pending_mentions
from ghactivity.services.org_context import load_org_context

logger = logging.getLogger("ghactivity.classifier")

PROMPT_VERSION = "unanswered-mention-v1"
MAX_BATCH_SIZE = 20
MAX_COMMENT_CHARS = 1500
MENTION_CONTEXT_RADIUS = MAX_COMMENT_CHARS // 2
MAX_RETRIES = 2
RETRY_BACKOFF_SECONDS = 1.5
NON_RETRY_STATUS = {400, 401, 403, 404, 422}

SYSTEM_PROMPT = (
    "You are a GitHub assistant. For each comment, determine whether a user mention is asking "
    "for a response or is simply a reference or courtesy. The comment may be written in any "
    'language. Respond with only "Yes" or "No".'
)

_MENTION_RE = re.compile(r"@[A-Za-z0-9_-]+")


class ClassifierResponseError(ValueError):
    """The model answered with something that is not a usable verdict list."""


def body_hash(body: str) -> str:
    return hashlib.sha256((body or "").encode("utf-8")).hexdigest()


def truncate_comment_body(body: str) -> str:
    """Keep at most ``MAX_COMMENT_CHARS`` characters centred on the first mention."""
    if len(body) <= MAX_COMMENT_CHARS:
        return body
    match = _MENTION_RE.search(body)
    if match is None:
        return body[: MAX_COMMENT_CHARS - 3] + "..."

    start = max(0, match.start() - MENTION_CONTEXT_RADIUS)
    end = min(len(body), match.start() + MENTION_CONTEXT_RADIUS)
    shortfall = MAX_COMMENT_CHARS - (end - start)
    if shortfall > 0:
        start = max(0, start - shortfall // 2)
        end = min(len(body), end + (shortfall - shortfall // 2))

    snippet = body[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(body):
        snippet = snippet + "..."
    if len(snippet) > MAX_COMMENT_CHARS:
        snippet = snippet[: MAX_COMMENT_CHARS - 3] + "..."
    return snippet


def build_batch_prompt(candidates: list[dict[str, Any]]) -> str:
    header = [
        f"There are {len(candidates)} GitHub comments.",
        "For each numbered item decide if the mention expects a response (Yes) or is informational (No).",
        'Respond with a JSON array of "Yes" or "No" strings in matching order.',
        "Only output the JSON array.",
        "Comments:",
    ]
    entries = []
    for index, candidate in enumerate(candidates, start=1):
        login = candidate.get("target_login") or "(unknown)"
        entries.append(
            f'{index}. Mentioned user: {login}\nComment: """{truncate_comment_body(candidate["body"])}"""'
        )
    return "\n".join(header) + "\n\n" + "\n\n".join(entries)


def parse_batch_answers(content: Any, expected: int) -> list[bool]:
    """Turn the model's JSON array into verdicts; ``y...`` means a reply is expected."""
    if not isinstance(content, str):
        raise ClassifierResponseError("Response did not include message content")
    text = content.strip()
    start, end = text.find("["), text.rfind("]")
    if start != -1 and end > start:
        text = text[start:end + 1]
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise ClassifierResponseError(f"Response is not a JSON array: {exc}") from exc
    if not isinstance(parsed, list):
        raise ClassifierResponseError("Expected a JSON array in the response")
    if len(parsed) != expected:
        raise ClassifierResponseError(f"Expected {expected} answers but received {len(parsed)}")

    verdicts = []
    for value in parsed:
        if isinstance(value, bool):
            verdicts.append(value)
        else:
            verdicts.append(str(value or "").strip().lower().startswith("y"))
    return verdicts


class MentionClassifierClient:
    """Minimal chat-completions client with retry on transport errors and 5xx."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = config.OPENAI_API_BASE_URL,
        model: str = config.OPENAI_MODEL,
        timeout: float = config.CLASSIFIER_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = httpx.Timeout(timeout)
        self.transport = transport

    def _should_retry(self, response: httpx.Response | None) -> bool:
        if response is None:
            return True
        return response.status_code >= 500 and response.status_code not in NON_RETRY_STATUS

    async def classify(self, candidates: list[dict[str, Any]]) -> tuple[list[bool], dict[str, Any]]:
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_batch_prompt(candidates)},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        url = f"{self.base_url}/chat/completions"

        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 2):
            response: httpx.Response | None = None
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(url, json=payload, headers=headers)
                    response.raise_for_status()
                    data = response.json()
                content = (((data.get("choices") or [{}])[0]).get("message") or {}).get("content")
                return parse_batch_answers(content, len(candidates)), data
            except (httpx.HTTPStatusError, httpx.RequestError) as exc:
                last_error = exc
                final = attempt > MAX_RETRIES or not self._should_retry(response)
                (logger.error if final else logger.warning)(
                    "Classifier request failed (attempt %d, status %s): %s",
                    attempt,
                    response.status_code if response is not None else "n/a",
                    str(exc) or exc.__class__.__name__,
                )
                if final:
                    raise
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
        raise RuntimeError(f"Classifier request failed: {last_error}")


def _summary(status: str = "completed", message: str | None = None) -> dict[str, Any]:
    return {
        "status": status,
        "totalCandidates": 0,
        "attempted": 0,
        "updated": 0,
        "unchanged": 0,
        "skipped": 0,
        "requiresResponseCount": 0,
        "notRequiringResponseCount": 0,
        "errors": 0,
        "message": message,
    }


async def classify_unanswered_mentions(
    db: Any,
    *,
    force: bool = False,
    now: datetime | None = None,
    client: MentionClassifierClient | None = None,
) -> dict[str, Any]:
    """Evaluate every pending mention that has no current verdict."""
    if client is None:
        if not config.OPENAI_API_KEY:
            logger.info("Mention classification skipped: no API key configured")
            return _summary("skipped", "API key is not configured")
        client = MentionClassifierClient(api_key=config.OPENAI_API_KEY)

    summary = _summary()
    org = await load_org_context(db)
    pending = await find_pending_mentions(
        db,
        now=now or utc_now(),
        threshold=DEFAULT_UNANSWERED_MENTION_DAYS,
        holidays=org.holidays,
        tz=org.tz,
        excluded_repository_ids=org.excluded_repository_ids,
        excluded_user_ids=org.excluded_user_ids,
    )
    summary["totalCandidates"] = len(pending)
    if not pending:
        summary["message"] = "No unanswered mentions to classify"
        return summary

    repo = get_mention_classification_repository(db)
    existing = await repo.get_many((entry["row"]["comment_id"], entry["target"]) for entry in pending)

    queue: list[dict[str, Any]] = []
    for entry in pending:
        entry["body_hash"] = body_hash(entry["body"])
        record = existing.get((entry["row"]["comment_id"], entry["target"]))
        if (
            record
            and not force
            and record.get("prompt_version") == PROMPT_VERSION
            and record.get("comment_body_hash") == entry["body_hash"]
        ):
            summary["skipped"] += 1
            continue
        queue.append(entry)

    with start_span("activity.mentions.classify", {"candidates": len(queue), "force": force}):
        for offset in range(0, len(queue), MAX_BATCH_SIZE):
            batch = queue[offset:offset + MAX_BATCH_SIZE]
            summary["attempted"] += len(batch)
            try:
                verdicts, raw = await client.classify(batch)
            except (httpx.HTTPError, ClassifierResponseError) as exc:
                logger.error("Mention classification batch failed: %s", exc)
                summary["errors"] += len(batch)
                record_classifier_batch("failed", len(batch))
                continue
            record_classifier_batch("success", len(batch))
            raw_text = json.dumps(raw)
            for entry, requires_response in zip(batch, verdicts):
                comment_id = entry["row"]["comment_id"]
                previous = existing.get((comment_id, entry["target"]))
                await repo.upsert_classification(
                    comment_id,
                    entry["target"],
                    comment_body_hash=entry["body_hash"],
                    prompt_version=PROMPT_VERSION,
                    requires_response=requires_response,
                    model=client.model,
                    raw_response=raw_text,
                )
                if previous is not None and previous.get("requires_response") == requires_response:
                    summary["unchanged"] += 1
                else:
                    summary["updated"] += 1
                if requires_response:
                    summary["requiresResponseCount"] += 1
                else:
                    summary["notRequiringResponseCount"] += 1

    logger.info(
        "Mention classification complete (candidates=%d attempted=%d updated=%d errors=%d)",
        summary["totalCandidates"], summary["attempted"], summary["updated"], summary["errors"],
    )
    return summary
