"""
Two-pass chat flow over the CRM database.

Pass 1 asks the SQL model for a query, which is extracted, normalized,
validated and executed. Whatever happens there becomes a context block
(data or failure) that pass 2 streams a narrated answer from.

    received -> generating_sql -> validation_failed
                               -> executing -> execution_failed | execution_succeeded
             -> composing_answer -> streaming -> completed

Failed stages flow forward as a ``QueryOutcome``; they never abort a request.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from app.config import settings
from app.core.prompt import ANSWER_SYSTEM_PROMPT, SQL_GENERATION_PROMPT
from app.core.sql_exec import QueryResult, SQLExecutionError, SQLExecutor
from app.core.sql_extract import extract_sql_candidate, normalize_sql
from app.core.sql_guard import validate_sql
from app.core.stream import response_to_text, transform_stream
from app.core.thread_store import Message, ThreadHandle, ThreadStore
from app.smart_logger import SmartLogger


class PipelineStage(str, Enum):
    RECEIVED = "received"
    GENERATING_SQL = "generating_sql"
    VALIDATION_FAILED = "validation_failed"
    EXECUTING = "executing"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_SUCCEEDED = "execution_succeeded"
    COMPOSING_ANSWER = "composing_answer"
    STREAMING = "streaming"
    COMPLETED = "completed"


@dataclass(frozen=True)
class QueryOutcome:
    stage: PipelineStage
    sql: str = ""
    result: Optional[QueryResult] = None
    error: Optional[str] = None
    # True when the model reply held no recognizable SQL
    malformed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.stage is PipelineStage.EXECUTION_SUCCEEDED and self.result is not None


FAILURE_INSTRUCTION = "Please answer the question conversationally or ask the user to rephrase."


def build_data_context(
    result: QueryResult,
    *,
    max_rows: int,
    max_chars: int,
) -> str:
    header = f"\n\n[QUERY EXECUTED]\nSQL: {result.sql}\n"
    if result.row_count == 0:
        return header + "Result: No rows returned."

    rows = SQLExecutor.format_rows_for_json(result)
    shown = rows[:max_rows]
    data = json.dumps(shown, ensure_ascii=False, indent=2, default=str)
    if len(data) > max_chars:
        data = data[:max_chars] + "\n... (data truncated)"
    note = f" (showing first {len(shown)})" if len(shown) < result.row_count else ""

    return (
        header
        + f"Rows returned: {result.row_count}{note}\n"
        + f"Columns: {', '.join(result.columns)}\n\n"
        + f"[DATA]\n{data}"
    )


def build_failure_context(error: Optional[str]) -> str:
    return (
        f"\n\n[DATABASE QUERY FAILED]\nError: {error or 'Unknown error'}\n"
        f"{FAILURE_INSTRUCTION}"
    )


def _to_langchain(turns: Sequence[Mapping[str, str]]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for turn in turns:
        if turn["role"] == "assistant":
            out.append(AIMessage(content=turn["content"]))
        else:
            out.append(HumanMessage(content=turn["content"]))
    return out


class ChatPipeline:
    """One request = one linear run of the stages above."""

    def __init__(
        self,
        *,
        thread_store: ThreadStore,
        executor: SQLExecutor,
        sql_llm: Any,
        answer_llm: Any,
        history_turns: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        data_context_max_rows: Optional[int] = None,
        data_context_max_chars: Optional[int] = None,
    ):
        self.thread_store = thread_store
        self.executor = executor
        self.sql_llm = sql_llm
        self.answer_llm = answer_llm
        self.history_turns = history_turns if history_turns is not None else settings.history_turns
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.sql_timeout_ms
        self.max_rows = (
            data_context_max_rows if data_context_max_rows is not None else settings.data_context_max_rows
        )
        self.max_chars = (
            data_context_max_chars if data_context_max_chars is not None else settings.data_context_max_chars
        )

    @staticmethod
    def _log_stage(stage: PipelineStage, thread_id: str, level: str = "INFO", **params: Any) -> None:
        SmartLogger.log(
            level,
            f"chat.pipeline.{stage.value}",
            category="chat.pipeline",
            params={"thread_id": thread_id, **params},
            max_inline_chars=400,
        )

    async def generate_sql_text(self, question: str, history: Sequence[Mapping[str, str]]) -> str:
        """Pass 1: one non-streaming completion, raw text out."""
        messages: List[BaseMessage] = [SystemMessage(content=SQL_GENERATION_PROMPT)]
        if self.history_turns > 0:
            messages.extend(_to_langchain(list(history)[-self.history_turns:]))
        messages.append(HumanMessage(content=question))
        response = await self.sql_llm.ainvoke(messages)
        return response_to_text(response)

    async def run_query(
        self,
        question: str,
        history: Sequence[Mapping[str, str]],
        *,
        thread_id: str = "",
    ) -> QueryOutcome:
        """Generate -> extract -> normalize -> validate -> execute."""
        self._log_stage(PipelineStage.GENERATING_SQL, thread_id, question=question[:200])
        try:
            raw_text = await self.generate_sql_text(question, history)
        except Exception as exc:
            self._log_stage(PipelineStage.EXECUTION_FAILED, thread_id, "ERROR", error=f"generation: {exc}")
            return QueryOutcome(stage=PipelineStage.EXECUTION_FAILED, error=f"SQL generation failed: {exc}")

        candidate = extract_sql_candidate(raw_text)
        if candidate is None:
            # Soft failure: the raw reply goes to validation as-is
            SmartLogger.log(
                "WARNING",
                "chat.pipeline.generation_malformed",
                category="chat.pipeline",
                params={"thread_id": thread_id, "raw": raw_text[:500]},
            )
            sql = normalize_sql(raw_text)
        else:
            sql = normalize_sql(candidate.sql)
        malformed = candidate is None

        validation = validate_sql(sql)
        if not validation.valid:
            self._log_stage(PipelineStage.VALIDATION_FAILED, thread_id, "WARNING", sql=sql, error=validation.error)
            return QueryOutcome(
                stage=PipelineStage.VALIDATION_FAILED,
                sql=sql,
                error=validation.error,
                malformed=malformed,
            )

        self._log_stage(PipelineStage.EXECUTING, thread_id, sql=sql, timeout_ms=self.timeout_ms)
        try:
            result = await self.executor.execute(sql, timeout_ms=self.timeout_ms)
        except SQLExecutionError as exc:
            self._log_stage(PipelineStage.EXECUTION_FAILED, thread_id, "ERROR", sql=sql, error=str(exc))
            return QueryOutcome(
                stage=PipelineStage.EXECUTION_FAILED,
                sql=sql,
                error=str(exc),
                malformed=malformed,
            )

        self._log_stage(
            PipelineStage.EXECUTION_SUCCEEDED,
            thread_id,
            row_count=result.row_count,
            execution_time_ms=result.execution_time_ms,
        )
        return QueryOutcome(
            stage=PipelineStage.EXECUTION_SUCCEEDED,
            sql=sql,
            result=result,
            malformed=malformed,
        )

    def build_context_block(self, outcome: QueryOutcome) -> str:
        if outcome.succeeded:
            return build_data_context(outcome.result, max_rows=self.max_rows, max_chars=self.max_chars)
        return build_failure_context(outcome.error)

    def compose_messages(
        self,
        question: str,
        prior_turns: Sequence[Mapping[str, str]],
        context_block: str,
    ) -> List[BaseMessage]:
        """Pass 2 prompt: persona, prior turns, question + context."""
        return [
            SystemMessage(content=ANSWER_SYSTEM_PROMPT),
            *_to_langchain(prior_turns),
            HumanMessage(content=question + context_block),
        ]

    async def stream_answer(
        self,
        *,
        prompt: Mapping[str, Any],
        thread_id: str,
        response_id: str,
    ) -> AsyncIterator[str]:
        """Run one turn and yield answer text deltas as they arrive."""
        start_time = time.perf_counter()
        thread: ThreadHandle = self.thread_store.get_or_create(thread_id)
        user_message = Message.from_payload(prompt)
        # Taken before the append: the inbound role may be one context_view filters out
        prior_turns: List[Dict[str, str]] = list(thread.context_view())
        thread.append(user_message)
        self._log_stage(PipelineStage.RECEIVED, thread_id, response_id=response_id)

        question = user_message.content if isinstance(user_message.content, str) else ""

        outcome = await self.run_query(question, prior_turns, thread_id=thread_id)
        context_block = self.build_context_block(outcome)

        self._log_stage(PipelineStage.COMPOSING_ANSWER, thread_id, outcome=outcome.stage.value)
        messages = self.compose_messages(question, prior_turns, context_block)

        def record_answer(text: str) -> None:
            thread.append(Message(role="assistant", content=text, id=response_id))
            self._log_stage(
                PipelineStage.COMPLETED,
                thread_id,
                response_id=response_id,
                chars=len(text),
                total_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )

        self._log_stage(PipelineStage.STREAMING, thread_id)
        async for delta in transform_stream(
            self.answer_llm.astream(messages),
            on_end=record_answer,
            category="chat.stream",
        ):
            yield delta
