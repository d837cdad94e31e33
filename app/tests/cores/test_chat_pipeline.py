# python -m pytest app/tests/cores/test_chat_pipeline.py -v

"""End-to-end tests for the two-pass chat flow with fake LLMs and a dummy pool."""

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace

import asyncpg
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage

from app.core.chat_pipeline import (
    ChatPipeline,
    PipelineStage,
    QueryOutcome,
    build_data_context,
    build_failure_context,
)
from app.core.prompt import ANSWER_SYSTEM_PROMPT, SQL_GENERATION_PROMPT
from app.core.sql_exec import QueryResult, SQLExecutor
from app.core.thread_store import Message, ThreadStore
from app.deps import DatabasePool


class RecordingLLM:
    """Chat model double recording the messages of each call"""

    def __init__(self, reply="", chunks=None, error=None):
        self.reply = reply
        self.chunks = chunks if chunks is not None else [reply]
        self.error = error
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.reply)

    async def astream(self, messages):
        self.calls.append(messages)
        for piece in self.chunks:
            yield AIMessageChunk(content=piece)


class DummyStatement:
    def __init__(self, columns, records):
        self.columns = columns
        self.records = records

    def get_attributes(self):
        return [SimpleNamespace(name=c) for c in self.columns]

    async def fetch(self):
        return self.records


class DummyTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyConn:
    """Fixed data store: every query returns the same rows"""

    def __init__(self, columns, records, error=None):
        self.columns = columns
        self.records = records
        self.error = error
        self.queries = []

    def transaction(self, readonly=False):
        return DummyTransaction()

    async def execute(self, sql):
        pass

    async def prepare(self, sql):
        self.queries.append(sql)
        if self.error is not None:
            raise self.error
        return DummyStatement(self.columns, self.records)


class DummyPool:
    def __init__(self, conn):
        self.conn = conn
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self, timeout=None):
        self.acquired += 1
        yield self.conn


LEADS_SQL = "SELECT lead_name AS name, status AS status FROM leads ORDER BY created_at DESC LIMIT 100"
LEADS_REPLY = f"Here is the query:\n```sql\n{LEADS_SQL}\n```"


def _make_pipeline(sql_llm, answer_llm, conn=None, store=None, **kwargs):
    if conn is None:
        conn = DummyConn(["name", "status"], [("Acme", "Won"), ("Globex", "New")])
    pool = DummyPool(conn)
    pipeline = ChatPipeline(
        thread_store=store if store is not None else ThreadStore(),
        executor=SQLExecutor(pool, acquire_timeout=1),
        sql_llm=sql_llm,
        answer_llm=answer_llm,
        **kwargs,
    )
    return pipeline, pool


def _run_turn(pipeline, content, thread_id="thread-1", response_id="resp-1", role="user"):
    async def collect():
        return [
            delta
            async for delta in pipeline.stream_answer(
                prompt={"role": role, "content": content},
                thread_id=thread_id,
                response_id=response_id,
            )
        ]

    return asyncio.run(collect())


class TestEndToEnd:
    def test_show_me_my_leads_streams_answer_and_records_turn(self):
        sql_llm = RecordingLLM(reply=LEADS_REPLY)
        answer_llm = RecordingLLM(chunks=["You have ", "2 leads: ", "Acme (Won) and Globex (New)."])
        store = ThreadStore()
        pipeline, pool = _make_pipeline(sql_llm, answer_llm, store=store)

        deltas = _run_turn(pipeline, "show me my leads")

        answer = "".join(deltas)
        assert answer == "You have 2 leads: Acme (Won) and Globex (New)."
        assert pool.conn.queries == [LEADS_SQL]

        history = store.get("thread-1").history()
        assert [m.role for m in history] == ["user", "assistant"]
        assert history[0].content == "show me my leads"
        assert history[1].content == answer
        assert history[1].id == "resp-1"

    def test_composition_prompt_carries_data_context(self):
        sql_llm = RecordingLLM(reply=LEADS_REPLY)
        answer_llm = RecordingLLM(reply="ok")
        pipeline, _ = _make_pipeline(sql_llm, answer_llm)

        _run_turn(pipeline, "show me my leads")

        messages = answer_llm.calls[0]
        assert isinstance(messages[0], SystemMessage)
        assert messages[0].content == ANSWER_SYSTEM_PROMPT
        final = messages[-1]
        assert isinstance(final, HumanMessage)
        assert final.content.startswith("show me my leads\n\n[QUERY EXECUTED]")
        assert f"SQL: {LEADS_SQL}" in final.content
        assert "Rows returned: 2" in final.content
        assert "Columns: name, status" in final.content
        assert '"name": "Acme"' in final.content

    def test_generation_prompt_has_schema_and_question_last(self):
        sql_llm = RecordingLLM(reply=LEADS_REPLY)
        pipeline, _ = _make_pipeline(sql_llm, RecordingLLM(reply="ok"))

        _run_turn(pipeline, "show me my leads")

        messages = sql_llm.calls[0]
        assert messages[0].content == SQL_GENERATION_PROMPT
        assert "vw_leads_by_status" in messages[0].content
        assert messages[-1] == HumanMessage(content="show me my leads")
        assert len(messages) == 2

    def test_works_with_langchain_fake_chat_models(self):
        sql_llm = FakeListChatModel(responses=[LEADS_REPLY])
        answer_llm = FakeListChatModel(responses=["Two leads found."])
        store = ThreadStore()
        pipeline, _ = _make_pipeline(sql_llm, answer_llm, store=store)

        deltas = _run_turn(pipeline, "show me my leads", response_id="resp-9")

        assert "".join(deltas) == "Two leads found."
        assert store.get("thread-1").history()[-1] == Message(
            role="assistant", content="Two leads found.", id="resp-9"
        )


class TestConversationHistory:
    def test_second_turn_sees_prior_turns_without_system_or_ids(self):
        store = ThreadStore()
        store.get_or_create("thread-1").append(Message(role="system", content="internal"))
        sql_llm = RecordingLLM(reply=LEADS_REPLY)
        answer_llm = RecordingLLM(reply="First answer.")
        pipeline, _ = _make_pipeline(sql_llm, answer_llm, store=store)

        _run_turn(pipeline, "show me my leads", response_id="r1")
        answer_llm.reply = "Second answer."
        answer_llm.chunks = ["Second answer."]
        _run_turn(pipeline, "only the won ones", response_id="r2")

        second_sql_call = sql_llm.calls[1]
        assert [type(m) for m in second_sql_call] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]
        assert second_sql_call[1].content == "show me my leads"
        assert second_sql_call[2].content == "First answer."
        assert second_sql_call[3].content == "only the won ones"

        second_answer_call = answer_llm.calls[1]
        assert [m.content for m in second_answer_call[1:3]] == ["show me my leads", "First answer."]
        assert second_answer_call[-1].content.startswith("only the won ones\n\n[QUERY EXECUTED]")

        history = store.get("thread-1").history()
        assert [m.id for m in history if m.role == "assistant"] == ["r1", "r2"]
        assert len(history) == 5

    def test_generation_history_is_truncated(self):
        store = ThreadStore()
        thread = store.get_or_create("thread-1")
        for i in range(10):
            thread.append(Message(role="user", content=f"q{i}"))
            thread.append(Message(role="assistant", content=f"a{i}"))
        sql_llm = RecordingLLM(reply=LEADS_REPLY)
        pipeline, _ = _make_pipeline(sql_llm, RecordingLLM(reply="ok"), store=store, history_turns=8)

        _run_turn(pipeline, "latest question")

        messages = sql_llm.calls[0]
        assert len(messages) == 1 + 8 + 1
        assert messages[1].content == "q6"
        assert messages[-2].content == "a9"

    def test_prompt_with_filtered_role_keeps_every_prior_turn(self):
        store = ThreadStore()
        thread = store.get_or_create("thread-1")
        thread.append(Message(role="user", content="q1"))
        thread.append(Message(role="assistant", content="a1"))
        sql_llm = RecordingLLM(reply=LEADS_REPLY)
        answer_llm = RecordingLLM(reply="ok")
        pipeline, _ = _make_pipeline(sql_llm, answer_llm, store=store)

        _run_turn(pipeline, "show me my leads", role="system")

        assert [m.content for m in sql_llm.calls[0][1:-1]] == ["q1", "a1"]
        assert [m.content for m in answer_llm.calls[0][1:-1]] == ["q1", "a1"]
        assert [m.role for m in store.get("thread-1").history()] == ["user", "assistant", "system", "assistant"]


class TestDatabaseUnavailable:
    def _disconnected_pipeline(self, answer_llm, store):
        return ChatPipeline(
            thread_store=store,
            executor=SQLExecutor(DatabasePool(), acquire_timeout=1),
            sql_llm=RecordingLLM(reply=LEADS_REPLY),
            answer_llm=answer_llm,
        )

    def test_unreachable_database_is_narrated_not_raised(self, monkeypatch):
        async def refuse(**kwargs):
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(asyncpg, "create_pool", refuse)
        answer_llm = RecordingLLM(reply="sorry")
        store = ThreadStore()
        pipeline = self._disconnected_pipeline(answer_llm, store)

        deltas = _run_turn(pipeline, "show me my leads")

        assert deltas == ["sorry"]
        final = answer_llm.calls[0][-1].content
        assert "[DATABASE QUERY FAILED]" in final
        assert "Database connection failed" in final
        assert store.get("thread-1").history()[-1].id == "resp-1"

    def test_pool_is_created_once_the_database_is_back(self, monkeypatch):
        conn = DummyConn(["name", "status"], [("Acme", "Won")])
        attempts = []

        async def flaky_create_pool(**kwargs):
            attempts.append(kwargs["dsn"])
            if len(attempts) == 1:
                raise ConnectionRefusedError("connection refused")
            return DummyPool(conn)

        monkeypatch.setattr(asyncpg, "create_pool", flaky_create_pool)
        answer_llm = RecordingLLM(reply="ok")
        pipeline = self._disconnected_pipeline(answer_llm, ThreadStore())

        first = asyncio.run(pipeline.run_query("show me my leads", []))
        second = asyncio.run(pipeline.run_query("show me my leads", []))

        assert first.stage is PipelineStage.EXECUTION_FAILED
        assert second.succeeded
        assert second.result.rows == ({"name": "Acme", "status": "Won"},)
        assert len(attempts) == 2


class TestFailureContexts:
    def test_validation_failure_skips_database_and_asks_to_rephrase(self):
        sql_llm = RecordingLLM(reply="```sql\nDROP TABLE leads\n```")
        answer_llm = RecordingLLM(reply="Could you rephrase that?")
        store = ThreadStore()
        pipeline, pool = _make_pipeline(sql_llm, answer_llm, store=store)

        deltas = _run_turn(pipeline, "delete all leads")

        assert pool.acquired == 0
        final = answer_llm.calls[0][-1].content
        assert "[DATABASE QUERY FAILED]" in final
        assert "Only SELECT queries are allowed." in final
        assert "rephrase" in final
        assert "".join(deltas) == "Could you rephrase that?"
        assert len(store.get("thread-1").history()) == 2

    def test_execution_failure_feeds_forward(self):
        conn = DummyConn([], [], error=asyncpg.PostgresError("column \"foo\" does not exist"))
        answer_llm = RecordingLLM(reply="Sorry, try again.")
        pipeline, _ = _make_pipeline(RecordingLLM(reply=LEADS_REPLY), answer_llm, conn=conn)

        deltas = _run_turn(pipeline, "show me my leads")

        final = answer_llm.calls[0][-1].content
        assert "[DATABASE QUERY FAILED]" in final
        assert "Database error" in final
        assert deltas == ["Sorry, try again."]

    def test_generation_call_failure_feeds_forward(self):
        sql_llm = RecordingLLM(error=RuntimeError("upstream 503"))
        answer_llm = RecordingLLM(reply="Hello!")
        pipeline, pool = _make_pipeline(sql_llm, answer_llm)

        outcome = asyncio.run(pipeline.run_query("hi", []))

        assert outcome.stage is PipelineStage.EXECUTION_FAILED
        assert "SQL generation failed" in outcome.error
        assert pool.acquired == 0

    def test_reply_without_sql_is_malformed_and_rejected(self):
        pipeline, pool = _make_pipeline(RecordingLLM(reply="Hello! How can I help?"), RecordingLLM(reply="hi"))

        outcome = asyncio.run(pipeline.run_query("hello", []))

        assert outcome.stage is PipelineStage.VALIDATION_FAILED
        assert outcome.malformed
        assert outcome.sql == "Hello! How can I help?"
        assert pool.acquired == 0

    def test_successful_outcome(self):
        pipeline, _ = _make_pipeline(RecordingLLM(reply=LEADS_REPLY), RecordingLLM(reply="x"))

        outcome = asyncio.run(pipeline.run_query("show me my leads", []))

        assert outcome.succeeded
        assert outcome.result.row_count == 2
        assert not outcome.malformed


class TestContextBlocks:
    def _result(self, rows, columns=("name",)):
        return QueryResult(sql="SELECT name FROM leads", columns=columns, rows=tuple(rows), row_count=len(rows))

    def test_no_rows(self):
        text = build_data_context(self._result([]), max_rows=10, max_chars=1000)

        assert text == "\n\n[QUERY EXECUTED]\nSQL: SELECT name FROM leads\nResult: No rows returned."

    def test_rows_are_bounded(self):
        rows = [{"name": f"lead-{i}"} for i in range(30)]

        text = build_data_context(self._result(rows), max_rows=5, max_chars=100000)

        assert "Rows returned: 30 (showing first 5)" in text
        assert "lead-4" in text
        assert "lead-5" not in text

    def test_chars_are_bounded(self):
        rows = [{"name": "x" * 500}]

        text = build_data_context(self._result(rows), max_rows=10, max_chars=100)

        assert text.endswith("... (data truncated)")

    def test_failure_context(self):
        text = build_failure_context("Only SELECT queries are allowed.")

        assert text == (
            "\n\n[DATABASE QUERY FAILED]\nError: Only SELECT queries are allowed.\n"
            "Please answer the question conversationally or ask the user to rephrase."
        )

    def test_outcome_without_result_is_not_success(self):
        assert not QueryOutcome(stage=PipelineStage.EXECUTION_SUCCEEDED).succeeded
