"""Tests for the response cache and request fingerprints."""
import asyncio
import re

import pytest

from ai.adapters.cache import ResponseCache, make_fingerprint


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


# --- Fingerprints ---

def test_fingerprint_ignores_case_and_whitespace():
    a = make_fingerprint("generateCode", {"prompt": "Write  a\nSort function", "context": {"language": "Python"}})
    b = make_fingerprint("GENERATECODE", {"prompt": "  write a sort   FUNCTION ", "context": {"language": "python"}})
    assert a == b
    assert a.startswith("generatecode:")


def test_fingerprint_differs_with_context():
    base = {"prompt": "explain this", "context": {"language": "python"}}
    other = {"prompt": "explain this", "context": {"language": "rust"}}
    assert make_fingerprint("explainCode", base) != make_fingerprint("explainCode", other)
    assert make_fingerprint("explainCode", base) != make_fingerprint("reviewCode", base)


def test_fingerprint_only_uses_selected_context_fields():
    fields = ["language"]
    a = {"prompt": "p", "context": {"language": "go", "cursor": 10}}
    b = {"prompt": "p", "context": {"language": "go", "cursor": 99}}
    assert make_fingerprint("generateCode", a, fields) == make_fingerprint("generateCode", b, fields)
    assert make_fingerprint("generateCode", a) != make_fingerprint("generateCode", b)


def test_fingerprint_is_independent_of_key_order():
    a = {"prompt": "p", "context": {"x": 1, "y": 2}}
    b = {"context": {"y": 2, "x": 1}, "prompt": "p"}
    assert make_fingerprint("chat", a) == make_fingerprint("chat", b)


# --- Cache ---

def test_put_get_and_expiry_boundary():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("f", {"code": "print(1)"}, ttl=10)

    clock.now = 109.999
    assert cache.get("f") == {"code": "print(1)"}

    clock.now = 110.0
    assert cache.get("f") is None
    assert len(cache) == 0


def test_non_positive_ttl_is_not_stored():
    cache = ResponseCache()
    cache.put("f", "v", ttl=0)
    assert cache.get("f") is None


def test_mutated_entry_is_served_as_miss():
    cache = ResponseCache()
    cache.put("f", {"code": "a"}, ttl=60)

    value = cache.get("f")
    value["code"] = "tampered"

    assert cache.get("f") is None
    assert len(cache) == 0


def test_invalidate_with_glob_regex_and_predicate():
    cache = ResponseCache()
    for key in ("generatecode:1", "generatecode:2", "reviewcode:1", "chat:1"):
        cache.put(key, key, ttl=60)

    assert cache.invalidate("generatecode:*") == 2
    assert cache.invalidate(re.compile(r"^review")) == 1
    assert cache.invalidate(lambda fp: fp.endswith(":1")) == 1
    assert len(cache) == 0
    assert cache.invalidate("anything") == 0


def test_invalidate_rejects_unknown_matcher():
    with pytest.raises(TypeError):
        ResponseCache().invalidate(42)


def test_sweep_evicts_only_expired():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("short", 1, ttl=5)
    cache.put("long", 2, ttl=50)

    clock.now += 5
    assert cache.sweep() == 1
    assert cache.get("long") == 2


def test_bounded_size_evicts_oldest():
    clock = FakeClock()
    cache = ResponseCache(max_size=2, clock=clock)
    cache.put("a", 1, ttl=60)
    clock.now += 1
    cache.put("b", 2, ttl=60)
    clock.now += 1
    cache.put("c", 3, ttl=60)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_stats_count_hits_and_misses():
    cache = ResponseCache(max_size=10)
    cache.put("a", 1, ttl=60)
    cache.get("a")
    cache.get("b")
    assert cache.stats() == {"entries": 1, "max_size": 10, "hits": 1, "misses": 1}


@pytest.mark.asyncio
async def test_run_sweeper_evicts_in_background():
    clock = FakeClock()
    cache = ResponseCache(clock=clock)
    cache.put("a", 1, ttl=1)
    clock.now += 2

    sweeper = asyncio.create_task(cache.run_sweeper(0.01))
    await asyncio.sleep(0.05)
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)

    assert len(cache) == 0


def test_fingerprint_covers_history_and_generation_parameters():
    cats = {"prompt": "continue", "history": [{"role": "user", "content": "talk about cats"}]}
    rockets = {"prompt": "continue", "history": [{"role": "user", "content": "talk about rockets"}]}
    assert make_fingerprint("chat", cats) != make_fingerprint("chat", rockets)
    assert make_fingerprint("chat", cats) == make_fingerprint("chat", {**cats, "history": [{"role": "user", "content": "Talk  about CATS"}]})

    base = {"prompt": "continue"}
    assert make_fingerprint("chat", base) != make_fingerprint("chat", {**base, "temperature": 0.9})
    assert make_fingerprint("chat", base) != make_fingerprint("chat", {**base, "max_tokens": 64})
