"""
Tests for the echocache caching proxy.

End-to-end behaviour against the in-memory reference store: replay of
captured output, chaining through child namespaces, field reads, the
operation capability filter, and error surfaces.
"""

import time
from unittest.mock import Mock

import pytest

from echocache import output


class Page:
    def __init__(self, name):
        self.name = name
        self.renders = 0

    def render(self, theme="light"):
        self.renders += 1
        print(f"<{self.name} theme={theme}>")
        return f"rendered {self.name}"


class Site:
    def __init__(self):
        self.title = "Example"
        self.home = Page("home")
        self.tags = ["a", "b"]
        self.lookups = 0
        self._pages = {}

    def page(self, name):
        self.lookups += 1
        return self._pages.setdefault(name, Page(name))

    def count(self):
        self.lookups += 1
        return self.lookups

    def layout(self, body):
        output.write("<html>")
        result = body.render()
        output.write("</html>")
        return result

    def fail(self):
        raise KeyError("missing")


class Formatter:
    """Callable object held in a field."""

    def __init__(self, prefix):
        self.prefix = prefix
        self.calls = 0

    def __call__(self, text):
        return self.format(text)

    def format(self, text):
        self.calls += 1
        return f"{self.prefix}{text}"


class Doc:
    def __init__(self):
        self.formatter = Formatter("> ")
        self.shows = 0

    def show(self, value):
        self.shows += 1
        return repr(value)


class Tracked:
    def current(self):
        from echocache.observability import correlation_id_var

        return correlation_id_var.get()

    def outer(self, inner):
        return self.current(), inner.current()


class TestReplay:
    """Captured output is emitted exactly once per call, hit or miss."""

    def test_hit_replays_output_without_reinvoking(self, store, capsys):
        from echocache import cached

        page = Page("home")
        proxy = cached(page, store, 60)

        first = proxy.render()
        first_out = capsys.readouterr().out
        second = proxy.render()
        second_out = capsys.readouterr().out

        assert first == second == "rendered home"
        assert first_out == second_out == "<home theme=light>\n"
        assert page.renders == 1

    def test_different_arguments_are_cached_separately(self, store, capsys):
        from echocache import cached

        page = Page("home")
        proxy = cached(page, store, 60)

        proxy.render("dark")
        proxy.render(theme="dark")
        proxy.render("dark")

        assert page.renders == 2
        assert capsys.readouterr().out == "<home theme=dark>\n" * 3

    def test_tag_look_alike_arguments_are_cached_separately(self, store):
        from echocache import cached

        doc = Doc()
        proxy = cached(doc, store, 60, route_stdout=False)

        assert proxy.show((1,)) == "(1,)"
        assert proxy.show({"__tuple__": [1]}) == "{'__tuple__': [1]}"
        assert proxy.show(b"hi") == "b'hi'"
        assert proxy.show({"__bytes__": "6869"}) == "{'__bytes__': '6869'}"
        assert doc.shows == 4

    def test_expired_entry_is_recomputed(self, store, capsys):
        from echocache import cached

        page = Page("home")
        proxy = cached(page, store, 0.01)

        proxy.render()
        time.sleep(0.02)
        proxy.render()

        assert page.renders == 2

    def test_nested_proxy_output_lands_in_outer_bundle(self, store, capsys):
        """Capture within capture: inner replay is part of the outer output."""
        from echocache import cached

        site = Site()
        proxy = cached(site, store, 60)
        body = proxy.page("home")

        proxy.layout(body)
        first = capsys.readouterr().out
        proxy.layout(body)
        second = capsys.readouterr().out

        assert first == second == "<html><home theme=light>\n</html>"
        assert site.page("home").renders == 1

    def test_print_not_captured_without_routing(self, store, capsys):
        from echocache import cached

        page = Page("home")
        proxy = cached(page, store, 60, route_stdout=False)

        proxy.render()
        proxy.render()

        assert page.renders == 1
        assert capsys.readouterr().out == "<home theme=light>\n"


class TestChaining:
    """Object results and fields are wrapped in child proxies."""

    def test_object_result_is_wrapped(self, store):
        from echocache import CachingProxy, cached, unwrap

        site = Site()
        proxy = cached(site, store, 60)

        page = proxy.page("about")

        assert isinstance(page, CachingProxy)
        assert unwrap(page) is site.page("about")

    def test_chained_call_is_cached_beneath_parent_path(self, store, capsys):
        from echocache import cached
        from echocache.keys import derive_path

        proxy = cached(Site(), store, 60)
        proxy.page("about").render()

        page_path = derive_path("page", ("about",))
        render_path = derive_path("render", ())
        assert store.calls_to("set") == [page_path, f"{page_path}/{render_path}"]

    def test_chained_key_differs_from_top_level_call(self, store, capsys):
        from echocache import cached
        from echocache.keys import derive_path

        direct = cached(Page("about"), store, 60)
        chained = cached(Site(), store, 60).page("about")

        direct.render()
        chained.render()

        render_path = derive_path("render", ())
        page_path, direct_path, chained_path = store.calls_to("set")
        assert page_path == derive_path("page", ("about",))
        assert direct_path == render_path
        assert chained_path == f"{page_path}/{render_path}"

    def test_chain_is_cached_at_every_level(self, store, capsys):
        from echocache import cached

        site = Site()
        proxy = cached(site, store, 60)

        proxy.page("about").render()
        proxy.page("about").render()

        assert site.lookups == 1
        assert site.page("about").renders == 1

    def test_field_object_is_wrapped_under_field_namespace(self, store, capsys):
        from echocache import CachingProxy, cached
        from echocache.keys import derive_path

        site = Site()
        proxy = cached(site, store, 60)

        home = proxy.home
        home.render()
        home.render()

        assert isinstance(home, CachingProxy)
        assert site.home.renders == 1
        assert store.calls_to("set") == [f"home/{derive_path('render', ())}"]

    def test_callable_object_field_is_wrapped(self, store):
        """A field holding a callable object is still a field, not an operation."""
        from echocache import CachingProxy, cached, read
        from echocache.keys import derive_path

        doc = Doc()
        proxy = cached(doc, store, 60, route_stdout=False)

        formatter = proxy.formatter
        assert isinstance(formatter, CachingProxy)
        assert isinstance(read(proxy, "formatter"), CachingProxy)
        assert formatter.prefix == "> "
        assert formatter.format("a") == "> a"
        assert formatter.format("a") == "> a"
        assert doc.formatter.calls == 1
        assert store.calls_to("set") == [f"formatter/{derive_path('format', ('a',))}"]

    def test_plain_fields_are_returned_directly(self, store):
        from echocache import cached, read

        proxy = cached(Site(), store, 60)

        assert proxy.title == "Example"
        assert proxy.tags == ["a", "b"]
        assert read(proxy, "title") == "Example"
        assert store.calls_to("get_if_fresh") == []

    def test_field_reads_are_not_cached(self, store):
        from echocache import cached

        site = Site()
        proxy = cached(site, store, 60)

        assert proxy.title == "Example"
        site.title = "Changed"
        assert proxy.title == "Changed"

    def test_child_inherits_cache_control(self, store, capsys):
        from echocache import cached

        policy = Mock(return_value=60)
        proxy = cached(Site(), store, policy)

        proxy.page("about").render()

        assert [c.args[0].method for c in policy.call_args_list] == ["page", "render"]

    def test_metrics_shared_across_tree(self, store, capsys):
        from echocache import cached, metrics

        proxy = cached(Site(), store, 60)
        proxy.page("about").render()
        proxy.page("about").render()

        counters = metrics(proxy).to_dict()
        assert counters["computes"] == 2
        assert counters["hits"] == 2
        assert metrics(proxy.page("x")) is metrics(proxy)


class TestDispatch:
    """Attribute protocol and the explicit call surface."""

    def test_explicit_invoke(self, store, capsys):
        from echocache import cached, invoke

        page = Page("home")
        proxy = cached(page, store, 60)

        assert invoke(proxy, "render", "dark") == "rendered home"
        assert invoke(proxy, "render", theme="dark") == "rendered home"
        assert page.renders == 2

    def test_operations_filter_by_name(self, store, capsys):
        from echocache import cached

        site = Site()
        proxy = cached(site, store, 60, operations={"page"})

        proxy.count()
        proxy.count()

        assert site.lookups == 2
        assert store.calls_to("lock") == []

    def test_operations_filter_callable(self, store):
        from echocache import cached

        site = Site()
        proxy = cached(site, store, 60, operations=lambda target, name: name != "count")

        assert proxy.count() == 1
        assert proxy.count() == 2

    def test_missing_attribute_raises(self, store):
        from echocache import cached

        proxy = cached(Site(), store, 60)

        with pytest.raises(AttributeError):
            proxy.nope

    def test_proxy_is_read_only(self, store):
        from echocache import cached

        proxy = cached(Site(), store, 60)

        with pytest.raises(AttributeError):
            proxy.title = "x"
        with pytest.raises(AttributeError):
            del proxy.title

    def test_dir_and_repr(self, store):
        from echocache import cached

        proxy = cached(Site(), store, 60)

        assert "page" in dir(proxy)
        assert "CachingProxy" in repr(proxy)
        assert "page" in repr(proxy.page)

    def test_is_object_typed(self):
        from echocache import is_object_typed

        assert is_object_typed(Page("x"))
        for value in (None, 1, 1.5, "s", b"b", [1], (1,), {"a": 1}, {1}, len, Page, print):
            assert not is_object_typed(value)


class TestCorrelation:
    """Every proxied call runs under a correlation ID."""

    def test_call_gets_a_correlation_id(self, store):
        from echocache import cached
        from echocache.observability import correlation_id_var

        proxy = cached(Tracked(), store, 60, route_stdout=False)

        assert proxy.current().startswith("corr-")
        assert correlation_id_var.get() == ""

    def test_nested_calls_share_the_id(self, store):
        from echocache import cached

        proxy = cached(Tracked(), store, 60, route_stdout=False)
        inner = cached(Tracked(), store.descend("inner"), 60, route_stdout=False)

        outer_id, inner_id = proxy.outer(inner)

        assert outer_id == inner_id != ""

    def test_bound_id_is_kept(self, store):
        from echocache import cached
        from echocache.observability import correlation_id_var, set_correlation_id

        proxy = cached(Tracked(), store, 60, route_stdout=False)
        token = set_correlation_id("corr-request")
        try:
            assert proxy.current() == "corr-request"
        finally:
            correlation_id_var.reset(token)


class TestConstruction:
    """cached() argument handling."""

    def test_default_ttl_comes_from_config(self, capsys):
        from echocache import cached
        from echocache.config import get_config_manager
        from echocache.store import Bundle

        get_config_manager().set("cache.default_ttl_seconds", 120)
        store = Mock()
        store.get_if_fresh.return_value = None
        store.lock.return_value = True

        cached(Page("home"), store).render()

        path = store.set.call_args.args[0]
        store.set.assert_called_once_with(path, Bundle("<home theme=light>\n", "rendered home"), 120)

    def test_digest_algorithm_override(self, store, capsys):
        import re

        from echocache import cached

        cached(Page("home"), store, 60, digest_algorithm="md5").render()

        assert re.fullmatch(r"render\([0-9a-f]{32}\)", store.calls_to("set")[0])

    def test_rejects_non_store(self):
        from echocache import cached

        with pytest.raises(TypeError):
            cached(Page("home"), object(), 60)

    def test_rejects_double_wrapping(self, store):
        from echocache import cached

        with pytest.raises(TypeError):
            cached(cached(Page("home"), store, 60), store, 60)

    def test_rejects_negative_ttl(self, store):
        from echocache import cached
        from echocache.errors import CacheControlError

        with pytest.raises(CacheControlError):
            cached(Page("home"), store, -1)


class TestErrors:
    """Failures surface synchronously to the caller."""

    def test_target_failure_propagates_and_is_not_cached(self, store):
        from echocache import cached

        proxy = cached(Site(), store, 60)

        with pytest.raises(KeyError):
            proxy.fail()

        assert store.calls_to("set") == []

    def test_unserializable_arguments_do_not_reach_target(self, store):
        from echocache import cached
        from echocache.errors import KeySerializationError

        site = Site()
        proxy = cached(site, store, 60)

        with pytest.raises(KeySerializationError):
            proxy.page(object())

        assert site.lookups == 0
        assert store.state.calls == []

    def test_descend_failure_is_wrapped(self, capsys):
        from echocache import cached
        from echocache.errors import StoreUnavailableError

        store = Mock()
        store.get_if_fresh.return_value = None
        store.lock.return_value = True
        store.descend.side_effect = RuntimeError("no such namespace")

        with pytest.raises(StoreUnavailableError) as exc_info:
            cached(Site(), store, 60).page("home")

        assert exc_info.value.operation == "descend"
