# Run tail-recursive computations in constant stack space.
#
# A chain is built lazily, one More at a time, and consumed by run(), which
# replaces its current state on every iteration instead of pushing a frame.

import functools
import gc
import itertools
import os
import unittest
import weakref
from typing import Generic, TypeVar
from unittest import mock

from loguru import logger
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger.disable(__name__)

T = TypeVar("T")


class TrampolineError(Exception):
    pass


class InvalidStateTransition(TrampolineError):
    pass


class ExhaustedSequence(TrampolineError):
    pass


class StepLimitExceeded(ExhaustedSequence):
    def __init__(self, steps):
        super().__init__(f"no result after {steps} steps")
        self.steps = steps


class Cancelled(TrampolineError):
    def __init__(self, steps):
        super().__init__(f"cancelled after {steps} steps")
        self.steps = steps


class Settings(BaseSettings):
    """Defaults for driving chains, read from TRAMPOLINE_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="TRAMPOLINE_",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    max_steps: int | None = Field(
        default=None, gt=0, description="Step bound applied when run() is given none"
    )


@functools.lru_cache()
def get_settings():
    return Settings()


class Trampoline(Generic[T]):
    __slots__ = ("__weakref__",)

    def is_done(self):
        raise NotImplementedError

    @property
    def complete(self):
        return self.is_done()

    def jump(self):
        raise NotImplementedError

    def result(self):
        return run(self)


class Done(Trampoline[T]):
    __slots__ = ("value",)

    def __init__(self, value):
        self.value = value

    def is_done(self):
        return True

    def jump(self):
        raise InvalidStateTransition("cannot jump from a finished trampoline")

    def __repr__(self):
        return f"Done({self.value!r})"


class More(Trampoline[T]):
    __slots__ = ("step",)

    def __init__(self, step):
        if not callable(step):
            raise TypeError(f"step must be callable, got {step!r}")
        self.step = step

    def is_done(self):
        return False

    def jump(self):
        return _expect_trampoline(self.step())

    def __repr__(self):
        return f"More({self.step!r})"


def _expect_trampoline(value):
    if not isinstance(value, Trampoline):
        raise TypeError(f"expected a Trampoline, got {type(value).__name__}")
    return value


def done(value):
    return Done(value)


def more(step):
    return More(step)


_UNSET = object()


def run(trampoline, *, max_steps=_UNSET, cancelled=None):
    """Drive a chain until it reaches a finished state and return its value.

    max_steps bounds the number of jumps (the configured default applies when
    it is not given, and is only read once a jump is needed); cancelled is
    polled before every jump. Both are off by default, in which case a chain
    that never finishes never returns.
    """
    if max_steps is not _UNSET and max_steps is not None and max_steps < 0:
        raise ValueError(f"max_steps must be non-negative, got {max_steps}")
    current = _expect_trampoline(trampoline)
    taken = 0
    while not current.is_done():
        if max_steps is _UNSET:
            max_steps = get_settings().max_steps
        if max_steps is not None and taken >= max_steps:
            logger.debug("trampoline stopped at step limit {}", max_steps)
            raise StepLimitExceeded(taken)
        if cancelled is not None and cancelled():
            logger.debug("trampoline cancelled after {} steps", taken)
            raise Cancelled(taken)
        current = _expect_trampoline(current.jump())
        taken += 1
    logger.debug("trampoline finished after {} steps", taken)
    return current.value


def steps(trampoline):
    """Yield each state of a chain in order, ending with the first Done."""
    current = _expect_trampoline(trampoline)
    while True:
        yield current
        if current.is_done():
            return
        current = _expect_trampoline(current.jump())


def first_done(states):
    for state in states:
        if state.is_done():
            return state.value
    raise ExhaustedSequence("sequence ended without a finished trampoline")


def trampolined(f):
    """Make calls to a step function return a deferred chain head.

    Recursive calls to the decorated name inside the function are deferred
    too, so the body can be written as plain tail recursion ending in done().
    """
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        return More(lambda: f(*args, **kwargs))
    return wrapper


def trampoline(f, *args, **kwargs):
    v = f(*args, **kwargs)
    if isinstance(v, Trampoline):
        return run(v)
    return v


def count_down(n, acc=0):
    if n == 0:
        return done(acc)
    return more(lambda: count_down(n - 1, acc + n))


def count_down_naive(n):
    if n == 0:
        return 0
    return n + count_down_naive(n - 1)


def forever():
    return more(forever)


def forever_then_done(n):
    if n == 0:
        return done("ok")
    return more(lambda: forever_then_done(n - 1))


class UseSettings(unittest.TestCase):
    def setUp(self):
        get_settings.cache_clear()

    def tearDown(self):
        get_settings.cache_clear()


class DoneTests(UseSettings):
    def test_result_is_value(self):
        for v in [0, None, "x", [1, 2], 10**40, (1, "a")]:
            self.assertEqual(done(v).result(), v)

    def test_is_done(self):
        self.assertTrue(done(1).is_done())
        self.assertTrue(done(1).complete)

    def test_jump_is_invalid(self):
        with self.assertRaises(InvalidStateTransition):
            done(1).jump()

    def test_repr(self):
        self.assertEqual(repr(done(3)), "Done(3)")


class MoreTests(UseSettings):
    def test_step_must_be_callable(self):
        with self.assertRaises(TypeError):
            more(42)

    def test_construction_does_not_run_step(self):
        calls = []

        def step():
            calls.append(1)
            return done("x")

        t = more(step)
        self.assertEqual(calls, [])
        self.assertFalse(t.is_done())
        self.assertFalse(t.complete)
        self.assertEqual(t.result(), "x")
        self.assertEqual(calls, [1])

    def test_jump_advances_once(self):
        t = more(lambda: more(lambda: done(2)))
        nxt = t.jump()
        self.assertIsInstance(nxt, More)
        last = nxt.jump()
        self.assertIsInstance(last, Done)
        self.assertEqual(last.value, 2)

    def test_step_returning_non_trampoline(self):
        with self.assertRaises(TypeError):
            more(lambda: 5).jump()
        with self.assertRaises(TypeError):
            more(lambda: 5).result()


class Bouncing(Trampoline):
    """A hand-written state that jumps a fixed number of times."""

    def __init__(self, left):
        self.left = left

    def is_done(self):
        return False

    def jump(self):
        if self.left == 0:
            return done("custom")
        return Bouncing(self.left - 1)


class RunTests(UseSettings):
    def test_custom_state(self):
        self.assertEqual(run(Bouncing(3)), "custom")
        self.assertEqual(run(Bouncing(3)), first_done(steps(Bouncing(3))))

    def test_custom_state_is_bounded(self):
        with self.assertRaises(StepLimitExceeded) as ctx:
            run(Bouncing(100), max_steps=10)
        self.assertEqual(ctx.exception.steps, 10)

    def test_deep_chain(self):
        n = 100000
        self.assertEqual(run(count_down(n)), n * (n + 1) // 2)

    def test_naive_recursion_overflows(self):
        with self.assertRaises(RecursionError):
            count_down_naive(100000)

    def test_step_limit_on_endless_chain(self):
        with self.assertRaises(StepLimitExceeded) as ctx:
            run(forever(), max_steps=1000)
        self.assertEqual(ctx.exception.steps, 1000)
        self.assertIsInstance(ctx.exception, ExhaustedSequence)

    def test_step_limit_not_reached(self):
        self.assertEqual(run(count_down(10), max_steps=10), 55)

    def test_zero_steps_allows_done(self):
        self.assertEqual(run(done("x"), max_steps=0), "x")

    def test_negative_limit(self):
        with self.assertRaises(ValueError):
            run(done(1), max_steps=-1)

    def test_cancelled(self):
        ticks = itertools.count()
        with self.assertRaises(Cancelled) as ctx:
            run(forever(), cancelled=lambda: next(ticks) >= 5)
        self.assertEqual(ctx.exception.steps, 5)

    def test_not_a_trampoline(self):
        with self.assertRaises(TypeError):
            run(3)

    def test_step_errors_propagate(self):
        def boom():
            raise KeyError("boom")

        with self.assertRaises(KeyError):
            run(more(boom))

    def test_intermediate_states_are_released(self):
        refs = []

        def chain(n):
            if n == 0:
                return done("end")
            t = more(lambda: chain(n - 1))
            refs.append(weakref.ref(t))
            return t

        self.assertEqual(chain(50).result(), "end")
        gc.collect()
        self.assertEqual(len(refs), 50)
        self.assertTrue(all(ref() is None for ref in refs))


class StepsTests(UseSettings):
    def test_states_in_order(self):
        states = list(steps(count_down(3)))
        self.assertEqual(len(states), 4)
        self.assertEqual([s.is_done() for s in states], [False, False, False, True])
        self.assertEqual(states[-1].value, 6)

    def test_done_yields_itself(self):
        t = done(1)
        self.assertEqual(list(steps(t)), [t])

    def test_first_done_matches_run(self):
        self.assertEqual(first_done(steps(count_down(100))), run(count_down(100)))

    def test_first_done_exhausted(self):
        with self.assertRaises(ExhaustedSequence):
            first_done(itertools.islice(steps(forever()), 100))
        with self.assertRaises(ExhaustedSequence):
            first_done([])


class TrampolinedTests(UseSettings):
    def test_decorated_recursion(self):
        @trampolined
        def total(n, acc=0):
            if n == 0:
                return done(acc)
            return total(n - 1, acc + n)

        self.assertEqual(total(100000).result(), 5000050000)
        self.assertEqual(total.__name__, "total")

    def test_decorated_call_is_lazy(self):
        calls = []

        @trampolined
        def f():
            calls.append(1)
            return done(1)

        t = f()
        self.assertEqual(calls, [])
        self.assertEqual(t.result(), 1)

    def test_trampoline_helper(self):
        self.assertEqual(trampoline(count_down, 100), 5050)
        self.assertEqual(trampoline(lambda x: x + 1, 1), 2)


class SettingsTests(UseSettings):
    def test_default_is_unbounded(self):
        self.assertIsNone(get_settings().max_steps)

    def test_limit_from_environment(self):
        with mock.patch.dict(os.environ, {"TRAMPOLINE_MAX_STEPS": "10"}):
            get_settings.cache_clear()
            with self.assertRaises(StepLimitExceeded) as ctx:
                run(forever())
            self.assertEqual(ctx.exception.steps, 10)
            self.assertEqual(run(forever_then_done(3)), "ok")
            self.assertEqual(run(count_down(100), max_steps=None), 5050)

    def test_bad_limit_does_not_affect_finished_chains(self):
        with mock.patch.dict(os.environ, {"TRAMPOLINE_MAX_STEPS": "abc"}):
            get_settings.cache_clear()
            self.assertEqual(done("v").result(), "v")
            self.assertEqual(run(count_down(3), max_steps=None), 6)
            with self.assertRaises(ValidationError):
                run(count_down(3))

    def test_limit_must_be_positive(self):
        with mock.patch.dict(os.environ, {"TRAMPOLINE_MAX_STEPS": "0"}):
            with self.assertRaises(ValidationError):
                Settings()


class LoggingTests(UseSettings):
    def setUp(self):
        super().setUp()
        self.messages = []
        logger.enable(__name__)
        self.handler = logger.add(self.messages.append, level="DEBUG", format="{message}")

    def tearDown(self):
        logger.remove(self.handler)
        logger.disable(__name__)
        super().tearDown()

    def test_finish_is_logged(self):
        run(count_down(3))
        self.assertIn("trampoline finished after 3 steps", "".join(self.messages))

    def test_limit_is_logged(self):
        with self.assertRaises(StepLimitExceeded):
            run(forever(), max_steps=2)
        self.assertIn("trampoline stopped at step limit 2", "".join(self.messages))


if __name__ == "__main__":
    __import__("sys").modules["unittest.util"]._MAX_LENGTH = 999999999
    unittest.main()
