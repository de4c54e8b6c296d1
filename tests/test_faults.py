"""Tests for fault description and scoped fault interception."""

from __future__ import annotations

import asyncio
import gc
import threading

from isoworker.faults import UNHANDLED_ASYNC_DESCRIPTION, FaultInterceptor, describe_exception
from isoworker.models import FailureDetail, FaultKind
import pytest


def _raise(exc: BaseException) -> BaseException:
    try:
        raise exc
    except BaseException as caught:  # noqa: BLE001
        return caught


# ===========================================================================
# describe_exception
# ===========================================================================


@pytest.mark.unit
class TestDescribeException:
    """describe_exception builds a serializable FailureDetail."""

    def test_message_is_str_of_exception(self) -> None:
        """The message is the exception's own text."""
        detail = describe_exception(_raise(ValueError("boom")), FaultKind.LOAD)
        assert detail.message == "boom"
        assert detail.kind == FaultKind.LOAD

    def test_stack_contains_traceback(self) -> None:
        """The stack is the formatted traceback."""
        detail = describe_exception(_raise(ValueError("boom")), FaultKind.LOAD)
        assert detail.stack.startswith("Traceback")
        assert "ValueError: boom" in detail.stack

    def test_frames_extracted(self) -> None:
        """Frames name the function where the exception was raised."""
        detail = describe_exception(_raise(ValueError("boom")), FaultKind.LOAD)
        assert detail.frames
        assert detail.frames[-1].name == "_raise"
        assert detail.frames[-1].filename.endswith("test_faults.py")

    def test_builtin_error_type_unqualified(self) -> None:
        """Builtin exceptions are named without their module."""
        detail = describe_exception(KeyError("k"), FaultKind.UNCAUGHT)
        assert detail.error_type == "KeyError"

    def test_custom_error_type_qualified(self) -> None:
        """Other exceptions carry their module path."""

        class CustomError(Exception):
            pass

        detail = describe_exception(CustomError("x"), FaultKind.UNCAUGHT)
        assert detail.error_type is not None
        assert detail.error_type.endswith("CustomError")
        assert "." in detail.error_type

    def test_empty_message_uses_default(self) -> None:
        """An exception without text falls back to the default message."""
        detail = describe_exception(
            RuntimeError(), FaultKind.UNHANDLED_ASYNC, default_message=UNHANDLED_ASYNC_DESCRIPTION
        )
        assert detail.message == UNHANDLED_ASYNC_DESCRIPTION

    def test_empty_message_without_default_uses_class_name(self) -> None:
        """Without a default, the class name describes the fault."""
        detail = describe_exception(RuntimeError(), FaultKind.LOAD)
        assert detail.message == "RuntimeError"

    def test_unraised_exception_has_no_frames(self) -> None:
        """An exception that was never raised has an empty frame list."""
        detail = describe_exception(ValueError("fresh"), FaultKind.LOAD)
        assert detail.frames == ()


# ===========================================================================
# FaultInterceptor
# ===========================================================================


@pytest.mark.unit
class TestFaultInterceptor:
    """FaultInterceptor routes escaped faults to its callback and restores hooks."""

    async def test_thread_exception_reported(self) -> None:
        """An exception escaping a thread is reported as uncaught."""
        faults: list[FailureDetail] = []

        def _target() -> None:
            raise ValueError("from thread")

        with FaultInterceptor(faults.append):
            thread = threading.Thread(target=_target)
            thread.start()
            thread.join()

        assert [f.message for f in faults] == ["from thread"]
        assert faults[0].kind == FaultKind.UNCAUGHT

    async def test_thread_system_exit_ignored(self) -> None:
        """SystemExit in a thread is not a fault, matching the default hook."""
        faults: list[FailureDetail] = []

        def _target() -> None:
            raise SystemExit(3)

        with FaultInterceptor(faults.append):
            thread = threading.Thread(target=_target)
            thread.start()
            thread.join()

        assert faults == []

    async def test_unretrieved_task_exception_reported(self) -> None:
        """A task exception nobody retrieved is reported as unhandled async."""
        faults: list[FailureDetail] = []

        async def _fail() -> None:
            raise RuntimeError("lost")

        with FaultInterceptor(faults.append):
            task = asyncio.ensure_future(_fail())
            await asyncio.wait([task])
            del task
            gc.collect()

        assert [f.message for f in faults] == ["lost"]
        assert faults[0].kind == FaultKind.UNHANDLED_ASYNC

    async def test_retrieved_task_exception_not_reported(self) -> None:
        """Awaited task exceptions are handled by the awaiting code."""
        faults: list[FailureDetail] = []

        async def _fail() -> None:
            raise RuntimeError("handled")

        with FaultInterceptor(faults.append):
            with pytest.raises(RuntimeError):
                await asyncio.ensure_future(_fail())
            gc.collect()

        assert faults == []

    async def test_context_without_exception_not_a_fault(self) -> None:
        """Loop events without an exception are logged, not reported."""
        faults: list[FailureDetail] = []
        loop = asyncio.get_running_loop()

        with FaultInterceptor(faults.append):
            loop.call_exception_handler({"message": "just a warning"})

        assert faults == []

    async def test_loop_exception_with_empty_message_uses_generic_text(self) -> None:
        """An exception without text gets the generic async description."""
        faults: list[FailureDetail] = []
        loop = asyncio.get_running_loop()

        with FaultInterceptor(faults.append):
            loop.call_exception_handler({"message": "x", "exception": RuntimeError()})

        assert faults[0].message == UNHANDLED_ASYNC_DESCRIPTION

    async def test_hooks_restored(self) -> None:
        """Both hooks return to their previous values on exit."""
        loop = asyncio.get_running_loop()
        saved_thread_hook = threading.excepthook
        saved_loop_handler = loop.get_exception_handler()

        with FaultInterceptor(lambda detail: None):
            assert threading.excepthook is not saved_thread_hook

        assert threading.excepthook is saved_thread_hook
        assert loop.get_exception_handler() is saved_loop_handler

    def test_requires_running_loop(self) -> None:
        """Entering outside a running loop is an error."""
        with pytest.raises(RuntimeError), FaultInterceptor(lambda detail: None):
            pass
