import unittest

from trampoline import StepLimitExceeded, done, more, run, trampolined


FIBONACCI_TESTS = {
    0: 0,
    1: 1,
    2: 1,
    3: 2,
    4: 3,
    5: 5,
    10: 55,
    56: 225851433717,
    156: 178890334785183168257455287891792,
    195: 25299086886458645685589389182743678652930,
}


# Tail-recursive accumulator form: every call carries the two most recent
# numbers forward, so each step only needs to return the next one.
def fib_trampolined(n, current=1, previous=0):
    if n == 0:
        return done(previous)
    if n == 1:
        return done(current)
    return more(lambda: fib_trampolined(n - 1, current + previous, current))


@trampolined
def fib_decorated(n, current=1, previous=0):
    if n == 0:
        return done(previous)
    if n == 1:
        return done(current)
    return fib_decorated(n - 1, current + previous, current)


def fib_recursive(n, current=1, previous=0):
    if n == 0:
        return previous
    if n == 1:
        return current
    return fib_recursive(n - 1, current + previous, current)


def _check(n):
    if n < 0:
        raise ValueError(f"fibonacci is undefined for negative n: {n}")


def fibonacci(n):
    _check(n)
    return fib_trampolined(n).result()


def fibonacci_iterative(n):
    _check(n)
    current, previous = 1, 0
    for _ in range(n):
        current, previous = current + previous, current
    return previous


class FibonacciTests(unittest.TestCase):
    def test_trampolined(self):
        for n, expected in FIBONACCI_TESTS.items():
            with self.subTest(n=n):
                self.assertEqual(fibonacci(n), expected)

    def test_iterative(self):
        for n, expected in FIBONACCI_TESTS.items():
            with self.subTest(n=n):
                self.assertEqual(fibonacci_iterative(n), expected)

    def test_decorated(self):
        for n, expected in FIBONACCI_TESTS.items():
            with self.subTest(n=n):
                self.assertEqual(fib_decorated(n).result(), expected)

    def test_agrees_with_direct_recursion(self):
        for n in range(300):
            self.assertEqual(fibonacci(n), fib_recursive(n))
            self.assertEqual(fibonacci(n), fibonacci_iterative(n))

    def test_negative(self):
        with self.assertRaises(ValueError):
            fibonacci(-1)
        with self.assertRaises(ValueError):
            fibonacci_iterative(-1)

    def test_negative_chain_never_finishes(self):
        with self.assertRaises(StepLimitExceeded):
            run(fib_trampolined(-1), max_steps=10000)


class DeepFibonacciTests(unittest.TestCase):
    N = 20000

    def test_trampolined_does_not_overflow(self):
        self.assertEqual(fibonacci(self.N), fibonacci_iterative(self.N))

    def test_direct_recursion_overflows(self):
        with self.assertRaises(RecursionError):
            fib_recursive(self.N)


if __name__ == "__main__":
    __import__("sys").modules["unittest.util"]._MAX_LENGTH = 999999999
    unittest.main()
