import asyncio

from servicehub.realtime.tasks import dead_letter_queue, drain, spawn


def test_failed_side_effect_lands_in_dead_letter_queue():
    async def boom():
        raise RuntimeError("store down")

    async def ok():
        return 42

    async def run():
        good = spawn(ok(), name="ok-task")
        spawn(boom(), name="mark-delivered:1")
        await drain()
        return good.result()

    assert asyncio.run(run()) == 42
    assert len(dead_letter_queue) == 1
    name, exc = dead_letter_queue[0]
    assert name == "mark-delivered:1"
    assert isinstance(exc, RuntimeError)


def test_drain_gives_up_after_timeout():
    async def slow():
        await asyncio.sleep(5)

    async def run():
        task = spawn(slow(), name="slow")
        await drain(timeout=0.05)
        done = task.done()
        task.cancel()
        await asyncio.sleep(0)
        return done

    assert asyncio.run(run()) is False
    assert len(dead_letter_queue) == 0
