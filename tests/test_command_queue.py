# test_command_queue.py
import pytest
import torch
from command_queue import CommandBufferStatus, CommandQueue

def test_commands_run_in_order_on_commit(queue):
    calls = []
    buffer = queue.command_buffer(label='ordered')
    first = buffer.encode(lambda: calls.append('first') or 1)
    second = buffer.encode(lambda: calls.append('second') or 2)

    assert calls == [], "Encoding should not execute anything."
    buffer.commit()
    buffer.wait_until_completed()

    assert calls == ['first', 'second'], "Commands did not run in encoding order."
    assert first.result() == 1
    assert second.result() == 2
    assert buffer.status is CommandBufferStatus.COMPLETED

def test_result_before_completion_raises(queue):
    buffer = queue.command_buffer()
    handle = buffer.encode(lambda: 42)
    with pytest.raises(RuntimeError):
        handle.result()
    buffer.commit()
    with pytest.raises(RuntimeError):
        handle.result()  # committed but not waited for
    buffer.wait_until_completed()
    assert handle.result() == 42

def test_failing_command_skips_the_rest(queue):
    def fail():
        raise ValueError("boom")

    buffer = queue.command_buffer()
    ok = buffer.encode(lambda: 'ok')
    failing = buffer.encode(fail)
    skipped = buffer.encode(lambda: 'never')
    buffer.commit()
    buffer.wait_until_completed()

    assert buffer.status is CommandBufferStatus.ERROR
    assert ok.result() == 'ok'
    with pytest.raises(ValueError, match="boom"):
        failing.result()
    with pytest.raises(RuntimeError):
        skipped.result()

def test_buffer_cannot_be_reused(queue):
    buffer = queue.command_buffer()
    buffer.encode(lambda: None)
    buffer.commit()
    with pytest.raises(RuntimeError):
        buffer.commit()
    with pytest.raises(RuntimeError):
        buffer.encode(lambda: None)

def test_wait_without_commit_raises(queue):
    with pytest.raises(RuntimeError):
        queue.command_buffer().wait_until_completed()

def test_run_is_submit_and_wait(queue):
    result = queue.run(torch.ones, 3, device=queue.device)
    assert torch.equal(result.cpu(), torch.ones(3))

def test_is_executing_only_during_commit(queue):
    buffer = queue.command_buffer()
    seen = buffer.encode(lambda: buffer.is_executing)
    assert not buffer.is_executing
    buffer.commit()
    buffer.wait_until_completed()
    assert seen.result() is True
    assert not buffer.is_executing

def test_default_device():
    q = CommandQueue()
    expected = 'cuda' if torch.cuda.is_available() else 'cpu'
    assert q.device.type == expected
