"""
Tests for identity resolution under concurrent callers.
"""

import itertools
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from docusight.config import LibrarySettings
from docusight.errors import MergeConflict
from docusight.identity import IdentityResolver


def make_resolver():
    counter = itertools.count(1)
    lock = threading.Lock()

    def next_id():
        with lock:
            return f"p{next(counter)}"

    return IdentityResolver(LibrarySettings(), id_factory=next_id)


def vec(*values):
    return np.asarray(values, dtype=np.float32)


AXES = [vec(1.0, 0.0, 0.0), vec(0.0, 1.0, 0.0), vec(0.0, 0.0, 1.0)]


class TestConcurrentResolve:
    """Several workers resolving faces at once."""

    def test_every_detection_assigned_once(self):
        resolver = make_resolver()

        def work(worker):
            return [resolver.resolve(f"w{worker}-face-{i}", AXES[i % 3]) for i in range(30)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(work, range(8)))

        persons = resolver.list_persons()
        assert len(persons) == 3
        assert sum(p.face_count for p in persons) == 240
        face_ids = [fid for p in persons for fid in p.face_ids]
        assert len(face_ids) == len(set(face_ids))
        for worker, assigned in enumerate(results):
            for i, person_id in enumerate(assigned):
                assert resolver.assignment_of(f"w{worker}-face-{i}") == person_id
                assert person_id == results[0][i % 3]

    def test_replays_from_many_threads_do_not_double_count(self):
        resolver = make_resolver()

        with ThreadPoolExecutor(max_workers=8) as pool:
            assigned = set(pool.map(lambda _: resolver.resolve('a-face-0', AXES[0]), range(32)))

        assert len(assigned) == 1
        assert resolver.get_person(assigned.pop()).face_count == 1


class TestConcurrentMerge:
    """Merges racing with each other and with resolution."""

    def test_same_merge_succeeds_once(self):
        resolver = make_resolver()
        x = resolver.resolve('x-0', AXES[0])
        y = resolver.resolve('y-0', AXES[1])

        def attempt(_):
            try:
                resolver.merge(x, y)
                return True
            except MergeConflict:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(16)))

        assert outcomes.count(True) == 1
        assert resolver.get_person(x).face_count == 2
        assert resolver.get_person(y).retired

    def test_resolve_during_merge_ends_on_target(self):
        resolver = make_resolver()
        x = resolver.resolve('x-0', vec(1.0, 0.0, 0.0))
        resolver.resolve('x-1', vec(1.0, 0.0, 0.0))
        y = resolver.resolve('y-0', vec(0.6, 0.8, 0.0))
        resolver.resolve('y-1', vec(0.6, 0.8, 0.0))
        assert x != y

        start = threading.Barrier(5)

        def resolve_late(worker):
            start.wait()
            for i in range(20):
                resolver.resolve(f"late-{worker}-{i}", vec(0.6, 0.8, 0.0))

        def merge():
            start.wait()
            resolver.merge(x, y)

        with ThreadPoolExecutor(max_workers=5) as pool:
            futures = [pool.submit(resolve_late, w) for w in range(4)] + [pool.submit(merge)]
            for future in futures:
                future.result()

        assert len(resolver) == 1
        late = [f"late-{w}-{i}" for w in range(4) for i in range(20)]
        assert all(resolver.canonical_id(resolver.assignment_of(fid)) == x for fid in late)
        assert resolver.get_person(x).face_count == 84
