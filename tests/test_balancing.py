import threading

import pytest

from gatewayroute.balancing import LoadBalancer, RequestStats, RoundRobin, get_request_stats


def test_round_robin_cycles_in_order():
    lb = RoundRobin()
    targets = ["http://localhost:8381", "http://localhost:8383", "http://localhost:8382"]
    picks = [lb.select_target(targets) for _ in range(6)]
    assert picks == targets + targets


def test_round_robin_empty_targets():
    assert RoundRobin().select_target([]) is None


def test_round_robin_single_target():
    lb = RoundRobin()
    assert {lb.select_target(["a"]) for _ in range(5)} == {"a"}


def test_round_robin_name_and_stop():
    lb = RoundRobin()
    lb.stop()
    assert lb.name == "round_robin"
    assert lb.select_target(["a", "b"]) == "a"


def test_load_balancer_is_abstract():
    with pytest.raises(TypeError):
        LoadBalancer()


def test_round_robin_is_fair_across_threads():
    lb = RoundRobin()
    targets = ["a", "b", "c", "d"]
    picks = []
    lock = threading.Lock()

    def worker():
        for _ in range(100):
            choice = lb.select_target(targets)
            with lock:
                picks.append(choice)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(picks) == 400
    assert {t: picks.count(t) for t in targets} == {t: 100 for t in targets}
    # After 400 picks over four targets the rotation is back at the start.
    assert lb.select_target(targets) == "a"
    assert lb.select_target(targets) == "b"


def test_request_stats_counts():
    stats = RequestStats()
    stats.update_request_count("a", True)
    stats.update_request_count("a", True)
    stats.update_request_count("a", False)
    counts = stats.counts("a")
    assert counts.successes == 2
    assert counts.failures == 1
    assert counts.total == 3


def test_request_stats_unknown_target():
    counts = RequestStats().counts("missing")
    assert counts.total == 0
    assert counts.successes == 0
    assert counts.failures == 0


def test_global_stats_is_shared():
    first = get_request_stats()
    before = first.counts("shared-target").successes
    get_request_stats().update_request_count("shared-target", True)
    assert first is get_request_stats()
    assert first.counts("shared-target").successes == before + 1