import asyncio

import pytest

from demo import next_line


@pytest.mark.asyncio
async def test_next_line_returns_typed_input():
    lines = asyncio.Queue()
    lines.put_nowait("q\n")

    assert await next_line(lines, asyncio.Event()) == "q\n"


@pytest.mark.asyncio
async def test_next_line_gives_up_when_session_ends():
    lines = asyncio.Queue()
    ended = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, ended.set)

    assert await asyncio.wait_for(next_line(lines, ended), timeout=1.0) is None

    lines.put_nowait("later\n")
    assert await next_line(lines, asyncio.Event()) == "later\n"
