import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.import_driver import ImportCounters, ImportDriver, checkpoint_interval, completion_message
from services.lead_resolver import OUTCOME_CREATED, OUTCOME_EXISTS, UpsertResult

MAPPING = {
    "email": "Email",
    "name": "Nome",
    "transactionId": "Transação",
    "status": "Status",
    "statusFilter": "Aprovado",
}


def _rows(count, start=0):
    return [
        {"Email": f"user{i}@x.com", "Nome": f"User {i}", "Transação": f"T{i}", "Status": "Aprovado"}
        for i in range(start, start + count)
    ]


class FakeResolver:
    def __init__(self, fail_emails=(), fail_all=False):
        self.seen = []
        self.fail_emails = set(fail_emails)
        self.fail_all = fail_all

    async def upsert(self, row):
        if self.fail_all or row.email in self.fail_emails:
            raise RuntimeError(f"API 500: boom {row.email}")
        status = OUTCOME_EXISTS if row.transaction_id in self.seen else OUTCOME_CREATED
        self.seen.append(row.transaction_id)
        return UpsertResult(status=status, message="ok", email=row.email, name=row.name, lead_id="L1")


class FakeProgressStore:
    """Job document kept in memory; `cancel_after` flips the status after that many status reads."""

    def __init__(self, cancel_after=None, status="pending"):
        self.job = {"status": status}
        self.checkpoints = []
        self.status_reads = 0
        self.cancel_after = cancel_after
        self.deleted = False

    async def get_status(self, job_id):
        if self.deleted:
            return None
        self.status_reads += 1
        if self.cancel_after is not None and self.status_reads > self.cancel_after:
            self.job["status"] = "cancelled"
        return self.job["status"]

    async def checkpoint(self, job_id, fields):
        if self.deleted:
            return False
        self.job.update(fields)
        self.checkpoints.append(dict(fields))
        return True


async def _no_sleep(seconds):
    return None


def _driver(resolver, store, **kw):
    return ImportDriver(resolver, store, MAPPING, sleep=_no_sleep, **kw)


def test_checkpoint_interval_is_clamped():
    assert checkpoint_interval(50) == 10
    assert checkpoint_interval(5000) == 50
    assert checkpoint_interval(10 ** 6) == 500


def test_processes_all_rows_and_completes():
    store = FakeProgressStore()
    resolver = FakeResolver()

    result = asyncio.run(_driver(resolver, store).run("job", _rows(5)))

    assert result.status == "completed"
    assert resolver.seen == ["T0", "T1", "T2", "T3", "T4"]
    assert store.job["status"] == "completed"
    assert store.job["last_processed_index"] == 5
    assert store.job["message"] == completion_message(result.counters)
    assert store.job["message"] == "✅ Concluído! Criados: 5, Existentes: 0, Erros: 0, Ignorados: 0"


def test_counters_always_add_up():
    rows = _rows(6)
    rows[1]["Email"] = ""
    rows[3]["Transação"] = ""
    rows.append(dict(rows[0]))
    store = FakeProgressStore()
    resolver = FakeResolver(fail_emails={"user4@x.com"})

    result = asyncio.run(_driver(resolver, store).run("job", rows))

    counters = result.counters
    assert (counters.successes, counters.existing, counters.errors, counters.skipped) == (3, 1, 1, 2)
    # rows without email or transaction id never reach the CRM
    assert "T1" not in resolver.seen
    assert "T3" not in resolver.seen
    assert resolver.seen == ["T0", "T2", "T5", "T0"]
    for fields in store.checkpoints:
        assert fields["processed_rows"] == (
            fields["success_count"] + fields["existing_count"] + fields["error_count"] + fields["skipped_count"]
        )


def test_error_rows_are_recorded_with_bounded_tail():
    store = FakeProgressStore()

    result = asyncio.run(_driver(FakeResolver(fail_all=True), store).run("job", _rows(60)))

    assert result.status == "completed"
    assert result.counters.errors == 60
    details = store.job["error_details"]
    assert len(details) == 50
    assert details[0]["email"] == "user10@x.com"
    assert details[-1] == {"email": "user59@x.com", "name": "User 59", "error": "API 500: boom user59@x.com"}


def test_cancellation_stops_between_rows():
    # one status read before the start write, then one per row
    store = FakeProgressStore(cancel_after=4)
    resolver = FakeResolver()

    result = asyncio.run(_driver(resolver, store).run("job", _rows(10)))

    assert result.status == "cancelled"
    assert resolver.seen == ["T0", "T1", "T2"]
    assert result.last_processed_index == 3
    assert store.job["status"] == "cancelled"
    assert store.job["processed_rows"] == 3
    assert store.job["last_processed_index"] == 3
    assert "status" not in store.checkpoints[-1]


def test_cancel_before_start_is_not_overwritten():
    store = FakeProgressStore(status="cancelled")
    resolver = FakeResolver()

    result = asyncio.run(_driver(resolver, store).run("job", _rows(3)))

    assert result.status == "cancelled"
    assert resolver.seen == []
    assert store.checkpoints == []
    assert store.job["status"] == "cancelled"


def test_deleted_job_stops_the_run():
    store = FakeProgressStore()
    store.deleted = True

    result = asyncio.run(_driver(FakeResolver(), store).run("job", _rows(3)))

    assert result.status == "cancelled"
    assert result.counters.processed == 0


def test_resume_matches_uninterrupted_run():
    rows = _rows(8)

    full_resolver = FakeResolver()
    full = asyncio.run(_driver(full_resolver, FakeProgressStore()).run("job", rows))

    resolver = FakeResolver()
    interrupted_store = FakeProgressStore(cancel_after=6)
    first = asyncio.run(_driver(resolver, interrupted_store).run("job", rows))
    assert first.status == "cancelled"

    resumed_store = FakeProgressStore(status="processing")
    second = asyncio.run(
        _driver(resolver, resumed_store).run(
            "job", rows, start_index=first.last_processed_index, counters=first.counters
        )
    )

    assert second.status == "completed"
    assert resolver.seen == full_resolver.seen
    assert second.counters.to_fields() == full.counters.to_fields()
    assert resumed_store.checkpoints[0]["message"] == "Processando registro 6 de 8..."


class StoredJob:
    """Job row as resume_import reloads it."""

    def __init__(self, fields):
        self.processed_rows = fields["processed_rows"]
        self.success_count = fields["success_count"]
        self.existing_count = fields["existing_count"]
        self.error_count = fields["error_count"]
        self.skipped_count = fields["skipped_count"]
        self.error_details = fields["error_details"]
        self.last_processed_index = fields["last_processed_index"]


def test_resume_from_stored_fields_after_cancel_between_checkpoints():
    # 300 rows checkpoint every third row; the cancel lands after the fifth
    rows = _rows(300)
    full = asyncio.run(_driver(FakeResolver(), FakeProgressStore()).run("job", rows))

    resolver = FakeResolver()
    interrupted_store = FakeProgressStore(cancel_after=6)
    first = asyncio.run(_driver(resolver, interrupted_store).run("job", rows))
    assert first.status == "cancelled"
    assert first.counters.processed == 5

    stored = StoredJob(interrupted_store.job)
    assert stored.processed_rows == 5
    assert stored.last_processed_index == 5

    second = asyncio.run(
        _driver(resolver, FakeProgressStore(status="processing")).run(
            "job", rows, start_index=stored.last_processed_index, counters=ImportCounters.from_job(stored)
        )
    )

    assert second.status == "completed"
    assert second.counters.to_fields() == full.counters.to_fields()
    assert (second.counters.successes, second.counters.existing) == (300, 0)


def test_checkpoint_cadence_on_large_files():
    store = FakeProgressStore()

    asyncio.run(_driver(FakeResolver(), store).run("job", _rows(1000)))

    # start + one per percent + final
    assert len(store.checkpoints) == 102
    assert store.checkpoints[0]["status"] == "processing"
    assert store.checkpoints[-1]["status"] == "completed"


def test_delay_between_rows_but_not_after_last():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    driver = ImportDriver(FakeResolver(), FakeProgressStore(), MAPPING, delay_ms=250, sleep=fake_sleep)
    asyncio.run(driver.run("job", _rows(4)))

    assert sleeps == [0.25, 0.25, 0.25]


def test_counters_resume_from_job_row():
    class Job:
        processed_rows = 4
        success_count = 2
        existing_count = 1
        error_count = 1
        skipped_count = 0
        error_details = [{"email": "a", "name": "b", "error": "c"}]

    counters = ImportCounters.from_job(Job())
    counters.record(OUTCOME_CREATED)

    assert counters.processed == 5
    assert counters.successes == 3
    assert counters.error_details == [{"email": "a", "name": "b", "error": "c"}]
