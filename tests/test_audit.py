import asyncio
import io

from keeper.data.audit import AuditContext, AuditManager, ConsoleAuditSink, MemoryAuditSink


class BrokenSink:
    async def emit(self, record):
        raise ConnectionError("mongo down")


def test_records_carry_context_and_run_id():
    sink = MemoryAuditSink()
    audit = AuditManager([sink], run_id="run_1")
    asyncio.run(audit.log("cycle_start", {"cycle_id": "c1"}, ctx=AuditContext(agent_id="keeper", trace_id="c1")))
    record = sink.records[0]
    assert record.run_id == "run_1"
    assert record.agent_id == "keeper"
    assert record.trace_id == "c1"
    assert record.level == "info"
    assert record.simulated is False


def test_simulated_flag_defaults_to_manager_mode():
    sink = MemoryAuditSink()
    audit = AuditManager([sink], simulated=True)
    asyncio.run(audit.log("buyback_simulated", {}))
    asyncio.run(audit.log("buyback_executed", {}, simulated=False))
    assert [r.simulated for r in sink.records] == [True, False]


def test_unknown_level_falls_back_to_info():
    sink = MemoryAuditSink()
    asyncio.run(AuditManager([sink]).log("x", {}, level="fatal"))
    assert sink.records[0].level == "info"


def test_broken_sink_never_fails_the_caller():
    sink = MemoryAuditSink()
    audit = AuditManager([BrokenSink(), sink])
    asyncio.run(audit.log("cycle_complete", {"outcome": "completed"}))
    assert audit.sink_failures == 1
    assert sink.event_types() == ["cycle_complete"]


def test_console_sink_format_and_level_filter():
    stream = io.StringIO()
    audit = AuditManager([ConsoleAuditSink(min_level="info", stream=stream)], simulated=True)

    async def _run():
        await audit.log("jupiter_quote", {"in_amount": 1}, level="debug")
        await audit.log("buyback_skipped", {"reason": "slippage_exceeded", "paused": False}, level="warning")

    asyncio.run(_run())
    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("[WARN]")
    assert "buyback_skipped" in lines[0]
    assert "[SIMULATED]" in lines[0]
    assert "reason=slippage_exceeded" in lines[0]
    assert "paused=false" in lines[0]


def test_audit_record_document():
    sink = MemoryAuditSink()
    asyncio.run(AuditManager([sink], run_id="run_1").log("cycle_error", {"error": "boom"}, level="error"))
    doc = sink.records[0].to_doc()
    assert doc["event_type"] == "cycle_error"
    assert doc["level"] == "error"
    assert doc["payload"] == {"error": "boom"}
    assert doc["run_id"] == "run_1"
