import asyncio
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database import IMPORT_LOCK_KEY, init_db
from services.concurrency_control import ImportLeaseController, lock_to_dict


def _controller(**kw):
    # a fresh key per test, so no lease row exists yet
    return ImportLeaseController(key=f"test-{uuid.uuid4()}", **kw)


def test_init_db_seeds_the_lease_row():
    async def scenario():
        await init_db()
        await init_db()
        return await ImportLeaseController(key=IMPORT_LOCK_KEY).get_lock()

    lock = asyncio.run(scenario())

    assert lock is not None
    assert lock.key == IMPORT_LOCK_KEY


def test_concurrent_acquire_on_fresh_row_has_one_winner():
    async def scenario():
        await init_db()
        lease = _controller()
        tokens = await asyncio.gather(
            *[lease.acquire(platform="hotmart", filename=f"vendas{i}.csv") for i in range(5)]
        )
        return lease, tokens

    lease, tokens = asyncio.run(scenario())

    winners = [t for t in tokens if t]
    assert len(winners) == 1
    lock = asyncio.run(lease.get_lock())
    assert lock.owner == winners[0]
    assert lock_to_dict(lock)["isLocked"] is True


def test_release_then_acquire_again():
    async def scenario():
        await init_db()
        lease = _controller()
        first = await lease.acquire(platform="hotmart", filename="a.csv", job_id="job-1")
        refused = await lease.acquire(platform="eduzz", filename="b.csv")
        stranger_release = await lease.release("not-the-owner")
        renewed = await lease.renew(first, message="Processando...")
        released = await lease.release(first, status="completed")
        after_release = await lease.get_lock()
        second = await lease.acquire(platform="eduzz", filename="b.csv")
        return first, refused, stranger_release, renewed, released, after_release, second

    first, refused, stranger_release, renewed, released, after_release, second = asyncio.run(scenario())

    assert first
    assert refused is None
    assert stranger_release is False
    assert renewed is True
    assert released is True
    assert after_release.owner is None
    assert lock_to_dict(after_release)["isLocked"] is False
    assert lock_to_dict(after_release)["status"] == "completed"
    assert second and second != first


def test_expired_lease_can_be_taken_over():
    async def scenario():
        await init_db()
        lease = _controller(ttl_seconds=0)
        first = await lease.acquire(platform="hotmart", filename="a.csv")
        await asyncio.sleep(0.01)
        second = await lease.acquire(platform="hotmart", filename="b.csv")
        stale_renew = await lease.renew(first)
        return first, second, stale_renew

    first, second, stale_renew = asyncio.run(scenario())

    assert first
    assert second and second != first
    assert stale_renew is False


def test_force_release_frees_a_held_lease():
    async def scenario():
        await init_db()
        lease = _controller()
        await lease.acquire(platform="hotmart", filename="a.csv")
        await lease.force_release()
        lock = await lease.get_lock()
        again = await lease.acquire(platform="hotmart", filename="c.csv")
        return lock, again

    lock, again = asyncio.run(scenario())

    assert lock.owner is None
    assert lock.status == "cancelled"
    assert again
