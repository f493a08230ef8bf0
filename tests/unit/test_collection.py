"""Unit tests for collection assembly."""

from unittest.mock import patch

from specboard.collection import CollectionAssembler
from specboard.specboard_logging import observability_hooks


def write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class TestCollectionAssembler:
    """Test cases for CollectionAssembler."""

    def test_missing_kind_directory(self, tmp_path):
        assembler = CollectionAssembler(tmp_path)

        assert assembler.list_slugs("spec") == []
        assert assembler.collect("bug") == []
        assert assembler.collect_all() == {"spec": [], "bug": []}

    def test_list_slugs_skips_hidden_and_files(self, tmp_path):
        specs = tmp_path / ".claude" / "specs"
        (specs / "b-spec").mkdir(parents=True)
        (specs / "a-spec").mkdir()
        (specs / ".draft").mkdir()
        (specs / "README.md").write_text("index", encoding="utf-8")

        assert CollectionAssembler(tmp_path).list_slugs("spec") == ["a-spec", "b-spec"]

    def test_collect_orders_and_skips_empty_directories(self, tmp_path):
        bugs = tmp_path / ".claude" / "bugs"
        write(bugs / "old-crash" / "report.md", "# Bug Report\n\nCrash on start.\n")
        write(bugs / "new-crash" / "report.md", "# Bug Report\n\nCrash on exit.\n")
        write(bugs / "new-crash" / "analysis.md", "## Root Cause\nNull handle on exit.\n")
        (bugs / "empty").mkdir()

        items = CollectionAssembler(tmp_path).collect("bug")

        assert [(item.slug, item.status) for item in items] == [
            ("old-crash", "reported"),
            ("new-crash", "analyzing"),
        ]

    def test_failing_item_is_degraded(self, tmp_path):
        specs = tmp_path / ".claude" / "specs"
        write(specs / "good" / "requirements.md", "# Requirements\n\nUsers can log in.\n")
        write(specs / "bad" / "requirements.md", "# Requirements\n\nAnything.\n")
        assembler = CollectionAssembler(tmp_path)
        original = assembler.parser.parse_item
        degraded_events = []

        def flaky_parse(kind, slug):
            if slug == "bad":
                raise RuntimeError("parser exploded")
            return original(kind, slug)

        def on_degraded(**data):
            degraded_events.append(data)

        observability_hooks.register_hook("item_degraded", on_degraded)
        try:
            with patch.object(assembler.parser, "parse_item", side_effect=flaky_parse):
                items = assembler.collect("spec")
        finally:
            observability_hooks.unregister_hook("item_degraded", on_degraded)

        by_slug = {item.slug: item for item in items}
        assert set(by_slug) == {"good", "bad"}
        assert by_slug["good"].status == "requirements"
        assert by_slug["bad"].degraded is True
        assert by_slug["bad"].status == "not-started"
        assert "parser exploded" in by_slug["bad"].error
        assert degraded_events[0]["slug"] == "bad"

    def test_collect_all(self, tmp_path):
        write(tmp_path / ".claude" / "specs" / "login" / "requirements.md", "Users can log in.\n")
        write(tmp_path / ".claude" / "bugs" / "crash" / "report.md", "Crash on start.\n")

        collections = CollectionAssembler(tmp_path).collect_all()

        assert [item.slug for item in collections["spec"]] == ["login"]
        assert [item.slug for item in collections["bug"]] == ["crash"]
