import asyncio
import json

import pytest

from codraw.engine.tools import ToolCall, ToolDispatcher, ToolOutput


class Recorder:
    def __init__(self, fail_sends=0):
        self.outputs: list[ToolOutput] = []
        self.drained = 0
        self.errors: list[str] = []
        self.fail_sends = fail_sends

    async def send(self, output):
        if self.fail_sends:
            self.fail_sends -= 1
            raise ConnectionError("socket gone")
        self.outputs.append(output)

    async def drained_cb(self):
        self.drained += 1


async def _until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _dispatcher(handlers, recorder):
    return ToolDispatcher(
        handlers,
        send_output=recorder.send,
        on_drained=recorder.drained_cb,
        on_error=recorder.errors.append,
    )


def test_parsed_arguments_tolerates_bad_json():
    assert ToolCall("c", "t", '{"focus": "sky"}').parsed_arguments() == {"focus": "sky"}
    assert ToolCall("c", "t", "").parsed_arguments() == {}
    assert ToolCall("c", "t", "{not json").parsed_arguments() == {}
    assert ToolCall("c", "t", "[1, 2]").parsed_arguments() == {}


@pytest.mark.anyio
async def test_each_call_gets_exactly_one_output():
    async def echo(arguments):
        return arguments

    recorder = Recorder()
    dispatcher = _dispatcher({"echo": echo}, recorder)

    assert dispatcher.submit(ToolCall("a", "echo", '{"n": 1}'))
    assert dispatcher.submit(ToolCall("b", "echo", '{"n": 2}'))
    assert not dispatcher.submit(ToolCall("a", "echo", '{"n": 3}'))
    await _until(lambda: recorder.drained == 1)

    assert [output.call_id for output in recorder.outputs] == ["a", "b"]
    assert json.loads(dispatcher.output_for("b").output) == {"n": 2}
    assert recorder.drained == 1
    assert dispatcher.idle

    await dispatcher.stop()


@pytest.mark.anyio
async def test_handler_exception_becomes_error_output():
    async def broken(arguments):
        raise ValueError("bad focus")

    recorder = Recorder()
    dispatcher = _dispatcher({"analyze_workspace": broken}, recorder)

    dispatcher.submit(ToolCall("a", "analyze_workspace"))
    await _until(lambda: recorder.drained == 1)

    output = recorder.outputs[0]
    assert output.is_error
    assert json.loads(output.output) == {"error": "Tool analyze_workspace failed: bad focus"}
    assert recorder.errors == ["Tool analyze_workspace failed: bad focus"]

    await dispatcher.stop()


@pytest.mark.anyio
async def test_worker_restarts_after_undeliverable_output():
    async def ok(arguments):
        return "fine"

    recorder = Recorder(fail_sends=1)
    dispatcher = _dispatcher({"ok": ok}, recorder)

    dispatcher.submit(ToolCall("a", "ok"))
    await _until(lambda: dispatcher.idle and dispatcher._worker.done())
    assert recorder.outputs == []

    dispatcher.submit(ToolCall("b", "ok"))
    await _until(lambda: recorder.drained == 1)
    assert [output.call_id for output in recorder.outputs] == ["b"]

    await dispatcher.stop()


@pytest.mark.anyio
async def test_stop_cancels_running_handler():
    started = asyncio.Event()

    async def hang(arguments):
        started.set()
        await asyncio.sleep(10)

    recorder = Recorder()
    dispatcher = _dispatcher({"hang": hang}, recorder)
    dispatcher.submit(ToolCall("a", "hang"))
    await started.wait()

    await dispatcher.stop()

    assert recorder.outputs == []
    assert not dispatcher.idle
