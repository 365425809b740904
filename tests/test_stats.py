import pytest

from rlservice.stats import MemorySink, StatsManager, StatsStore


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def manager(sink):
    return StatsManager(StatsStore(sink))


@pytest.mark.parametrize(
    "key,want",
    [
        ("path_/foo/bar", "path_/foo/bar"),
        ("path_/foo:*:bar", "path_/foo_*_bar"),
        ("path_/foo|bar|baz", "path_/foo_bar_baz"),
        ("path_/foo:bar|baz", "path_/foo_bar_baz"),
    ],
)
def test_escaping_invalid_characters_in_metric_name(manager, sink, key, want):
    stats = manager.new_stats(key)
    assert stats.key == key
    stats.total_hits.inc()
    manager.store.flush()
    assert f"ratelimit.service.rate_limit.{want}.total_hits" in sink.counters


def test_same_key_gives_same_counters(manager):
    first = manager.new_stats("domain.key")
    second = manager.new_stats("domain.key")
    first.over_limit.inc()
    assert second.over_limit.value() == 1
    assert first.over_limit is second.over_limit


def test_store_lookup_reads_stats_counters(manager):
    stats = manager.new_stats("test-domain.key2")
    stats.within_limit.add(3)
    counter = manager.store.new_counter("ratelimit.service.rate_limit.test-domain.key2.within_limit")
    assert counter.value() == 3


def test_domain_stats(manager):
    domain = manager.new_domain_stats("foo_domain")
    domain.not_found.inc()
    counter = manager.store.new_counter("ratelimit.service.rate_limit.foo_domain.domain_not_found")
    assert counter.value() == 1


def test_service_stats_names(manager, sink):
    service = manager.new_service_stats()
    service.config_load_success.inc()
    service.should_rate_limit.service_error.inc()
    service.global_shadow_mode.inc()
    manager.store.flush()
    assert sink.counters == {
        "ratelimit.service.config_load_success": 1,
        "ratelimit.service.call.should_rate_limit.service_error": 1,
        "ratelimit.service.global_shadow_mode": 1,
    }


def test_flush_sends_only_increments(sink):
    store = StatsStore(sink)
    counter = store.new_counter("c")
    counter.add(2)
    store.flush()
    store.flush()
    assert sink.counters == {"c": 2}
    counter.inc()
    store.flush()
    assert sink.counters == {"c": 3}
    assert counter.value() == 3


def test_zero_counters_are_not_flushed(sink):
    store = StatsStore(sink)
    store.new_counter("idle")
    store.flush()
    assert sink.counters == {}


def test_extra_tags_are_part_of_the_name(sink):
    manager = StatsManager(StatsStore(sink), {"zone": "a"})
    manager.new_stats("k").total_hits.inc()
    manager.store.flush()
    assert list(sink.counters) == ["ratelimit.service.rate_limit.k.total_hits.__zone=a"]


def test_store_without_sink_still_counts():
    store = StatsStore()
    counter = store.new_counter("x")
    counter.inc()
    store.flush()
    assert counter.value() == 1