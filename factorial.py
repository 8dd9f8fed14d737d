# Factorial in continuation-passing style. Both the recursive call and each
# continuation call are thunked, so the chain runs without growing the stack
# and only a couple of its states are alive at any moment.

import math
import sys
import unittest
import weakref
from unittest import mock

from trampoline import More, done, more, run


def fact_cps(n, cont):
    if n == 0:
        return cont(1)
    return fact_cps(n - 1, lambda value: cont(n * value))


def fact_cps_thunked(n, cont):
    if n == 0:
        return cont(1)
    return more(lambda: fact_cps_thunked(
                    n - 1,
                    lambda value: more(lambda: cont(n * value))))


def factorial(n):
    if n < 0:
        raise ValueError(f"factorial is undefined for negative n: {n}")
    return run(fact_cps_thunked(n, done))


class FactorialTests(unittest.TestCase):
    def test_small(self):
        for n in range(20):
            self.assertEqual(factorial(n), math.factorial(n))

    def test_matches_plain_cps(self):
        for n in range(50):
            self.assertEqual(factorial(n), fact_cps(n, lambda x: x))

    def test_deep(self):
        self.assertEqual(factorial(3000), math.factorial(3000))

    def test_plain_cps_overflows(self):
        with self.assertRaises(RecursionError):
            fact_cps(5000, lambda x: x)

    def test_negative(self):
        with self.assertRaises(ValueError):
            factorial(-3)

    def test_states_are_short_lived(self):
        refs = []
        peak = [0]

        def tracked_more(step):
            t = More(step)
            refs.append(weakref.ref(t))
            return t

        def sample():
            peak[0] = max(peak[0], sum(1 for ref in refs if ref() is not None))
            return False

        with mock.patch.object(sys.modules[__name__], "more", tracked_more):
            self.assertEqual(run(fact_cps_thunked(200, done), cancelled=sample),
                             math.factorial(200))
        self.assertEqual(len(refs), 400)
        # The chain head held by run() plus the current state.
        self.assertLessEqual(peak[0], 2)


if __name__ == "__main__":
    sys.modules["unittest.util"]._MAX_LENGTH = 999999999
    unittest.main()
