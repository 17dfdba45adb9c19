import threading

import pytest

from pcr.cache import KIND_DEPLOYMENT, KIND_SERVICE, TargetCache, TargetRef, experiment_targets
from pcr.errors import TargetConflictError
from pcr.experiment import Experiment

from conftest import experiment

A = "bookinfo/rollout-a"
B = "bookinfo/rollout-b"


def _refs(*names, kind=KIND_DEPLOYMENT, ns="bookinfo"):
    return [TargetRef(kind, ns, n) for n in names]


def test_marks_on_unregistered_target_never_change():
    cache = TargetCache()
    for _ in range(3):
        assert cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is False
        assert cache.mark_missing(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is False
    assert cache.resolve_owner(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is None


def test_mark_found_changes_once_until_missing():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews-v2"))

    assert cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is True
    assert cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is False
    assert cache.mark_missing(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is True
    assert cache.mark_missing(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is False
    assert cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is True


def test_kind_and_namespace_are_part_of_the_key():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews"))
    assert cache.mark_found(KIND_SERVICE, "reviews", "bookinfo") is False
    assert cache.mark_found(KIND_DEPLOYMENT, "reviews", "other") is False
    assert cache.mark_found(KIND_DEPLOYMENT, "reviews", "bookinfo") is True


def test_registration_is_idempotent_and_keeps_state():
    cache = TargetCache()
    adapter = cache.register_experiment(A, _refs("reviews-v2", "reviews-v3"))
    cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo")

    again = cache.register_experiment(A, _refs("reviews-v2", "reviews-v3"))

    assert again is adapter
    assert cache.is_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo")
    assert cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") is False


def test_conflicting_registration_leaves_cache_untouched():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews-v2"))

    with pytest.raises(TargetConflictError):
        cache.register_experiment(B, _refs("reviews-v4", "reviews-v2"))

    assert cache.resolve_owner(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") == A
    assert cache.resolve_owner(KIND_DEPLOYMENT, "reviews-v4", "bookinfo") is None
    assert cache.adapter(B) is None


def test_reregistration_releases_dropped_targets():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews-v2", "reviews-v3"))
    cache.register_experiment(A, _refs("reviews-v2"))

    assert cache.resolve_owner(KIND_DEPLOYMENT, "reviews-v3", "bookinfo") is None
    cache.register_experiment(B, _refs("reviews-v3"))
    assert cache.resolve_owner(KIND_DEPLOYMENT, "reviews-v3", "bookinfo") == B


def test_unregister_frees_targets_for_other_experiments():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews-v2"))
    cache.unregister_experiment(A)
    cache.unregister_experiment(A)

    cache.register_experiment(B, _refs("reviews-v2"))
    assert cache.resolve_owner(KIND_DEPLOYMENT, "reviews-v2", "bookinfo") == B


def test_found_and_missing_feed_the_owner_adapter():
    cache = TargetCache()
    adapter = cache.register_experiment(A, _refs("reviews-v3"))

    cache.mark_found(KIND_DEPLOYMENT, "reviews-v3", "bookinfo")
    action = adapter.snapshot()
    assert action.resume and not action.refresh

    cache.mark_missing(KIND_DEPLOYMENT, "reviews-v3", "bookinfo")
    action = adapter.snapshot()
    assert action.refresh and not action.resume
    assert action.target_name == "reviews-v3"


def test_mark_found_without_notify_is_silent():
    cache = TargetCache()
    adapter = cache.register_experiment(A, _refs("reviews-v3"))
    assert cache.mark_found(KIND_DEPLOYMENT, "reviews-v3", "bookinfo", notify=False) is True
    assert adapter.pending() is None


def test_experiment_targets_for_deployment_and_service_kinds():
    dep = Experiment.from_object(experiment(candidates=("reviews-v3", "reviews-v4")))
    assert experiment_targets(dep) == [
        TargetRef(KIND_SERVICE, "bookinfo", "reviews"),
        TargetRef(KIND_DEPLOYMENT, "bookinfo", "reviews-v2"),
        TargetRef(KIND_DEPLOYMENT, "bookinfo", "reviews-v3"),
        TargetRef(KIND_DEPLOYMENT, "bookinfo", "reviews-v4"),
    ]

    svc = Experiment.from_object(experiment(service_name="", baseline="reviews-v2", kind="Service"))
    assert experiment_targets(svc) == [
        TargetRef(KIND_SERVICE, "bookinfo", "reviews-v2"),
        TargetRef(KIND_SERVICE, "bookinfo", "reviews-v3"),
    ]


def test_concurrent_marks_flip_exactly_once():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews-v2"))
    results = []
    lock = threading.Lock()

    def mark():
        changed = cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo")
        with lock:
            results.append(changed)

    threads = [threading.Thread(target=mark) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_snapshot_lists_entries():
    cache = TargetCache()
    cache.register_experiment(A, _refs("reviews-v2"))
    cache.mark_found(KIND_DEPLOYMENT, "reviews-v2", "bookinfo")
    assert cache.snapshot() == [
        {"kind": KIND_DEPLOYMENT, "namespace": "bookinfo", "name": "reviews-v2", "experiment": A, "found": True}
    ]
