"""Functional programming utilities for pipeline composition."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import reduce
from typing import Callable, Hashable, Mapping, TypeVar

T = TypeVar('T')
R = TypeVar('R')


def pipe_run(value: T, *funcs: Callable[[T], T]) -> T:
    """
    Apply functions sequentially to a value (left-to-right).

    Example:
        table = pipe_run(
            table,
            partial(match_standards, standards=stds, by="compound"),
            partial(add_deviation, observed="d13C", reference="true_d13C"),
        )

    Equivalent to: func2(func1(value))
    """
    return reduce(lambda v, f: f(v), funcs, value)


def map_keyed(tasks: Mapping[Hashable, T],
              fn: Callable[[T], R],
              n_workers: int = 1) -> dict:
    """
    Apply ``fn`` to every task and return {key: result}.

    With ``n_workers > 1`` the tasks run on a thread pool. Results are keyed,
    so the output does not depend on completion order. Exceptions propagate.

    Args:
        tasks: key -> task argument
        fn: Function applied to each task argument
        n_workers: Number of worker threads

    Returns:
        Dictionary key -> fn(task)
    """
    if n_workers <= 1 or len(tasks) <= 1:
        return {key: fn(task) for key, task in tasks.items()}

    results = {}
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        future_map = {executor.submit(fn, task): key for key, task in tasks.items()}
        for future in as_completed(future_map):
            results[future_map[future]] = future.result()
    return results
