"""
Pipeline building block tests.

Tests:
1. Build state machine: legal transitions, timestamps, terminal immutability
2. Event bus: per-build seq, fan-out, replay after reconnect
3. Checkpoint store: upsert and stale discard
4. Workspaces: one holder per site, path containment, output layout
5. BuildContext: reference resolution, per-URL settings, cancellation
"""

import queue
from datetime import datetime, timedelta

import pytest

from edgeforge.pipeline import (
    Build,
    BuildCancelledError,
    BuildContext,
    BuildEventBus,
    BuildEventType,
    BuildStatus,
    Checkpoint,
    CheckpointStore,
    InvalidStateTransitionError,
    LogLevel,
    PageState,
    Stage,
    WorkspaceBusyError,
    WorkspaceError,
    WorkspaceManager,
    advance_build,
    can_transition_build,
    page_output_path,
    stages_after,
    transition_build,
)
from edgeforge.settings import AssetOverride


# =============================================================================
# State machine
# =============================================================================

class TestBuildStateMachine:
    """Build lifecycle transitions."""

    def test_forward_flow(self):
        assert can_transition_build(BuildStatus.QUEUED, BuildStatus.CRAWLING)
        assert can_transition_build(BuildStatus.CRAWLING, BuildStatus.OPTIMIZING)
        assert can_transition_build(BuildStatus.OPTIMIZING, BuildStatus.DEPLOYING)
        assert can_transition_build(BuildStatus.DEPLOYING, BuildStatus.SUCCESS)

    def test_no_skipping_ahead(self):
        assert not can_transition_build(BuildStatus.QUEUED, BuildStatus.SUCCESS)
        assert not can_transition_build(BuildStatus.CRAWLING, BuildStatus.DEPLOYING)
        assert not can_transition_build(BuildStatus.OPTIMIZING, BuildStatus.CRAWLING)

    def test_any_in_flight_state_can_fail_or_cancel(self):
        for status in (BuildStatus.QUEUED, BuildStatus.CRAWLING, BuildStatus.OPTIMIZING, BuildStatus.DEPLOYING):
            assert can_transition_build(status, BuildStatus.FAILED)
            assert can_transition_build(status, BuildStatus.CANCELLED)

    def test_terminal_states_are_immutable(self):
        """A finished build never moves again, not even to itself."""
        for terminal in (BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED):
            for target in BuildStatus:
                assert not can_transition_build(terminal, target)

    def test_same_in_flight_state_is_allowed(self):
        assert can_transition_build(BuildStatus.OPTIMIZING, BuildStatus.OPTIMIZING)

    def test_transition_stamps_timestamps_once(self):
        build = Build(site_id="s")
        t1 = datetime(2026, 1, 1, 12, 0, 0)
        t2 = t1 + timedelta(minutes=5)

        transition_build(build, BuildStatus.CRAWLING, now=t1)
        transition_build(build, BuildStatus.OPTIMIZING, now=t2)
        assert build.started_at == t1

        transition_build(build, BuildStatus.FAILED, now=t2)
        assert build.completed_at == t2

        with pytest.raises(InvalidStateTransitionError):
            transition_build(build, BuildStatus.CANCELLED)
        assert build.status == BuildStatus.FAILED
        assert build.completed_at == t2

    def test_advance_steps_through_intermediate_states(self):
        build = Build(site_id="s")
        assert advance_build(build, BuildStatus.OPTIMIZING) is True
        assert build.status == BuildStatus.OPTIMIZING
        assert build.started_at is not None
        assert advance_build(build, BuildStatus.CRAWLING) is False
        assert build.status == BuildStatus.OPTIMIZING

    def test_advance_rejects_terminal_targets_and_builds(self):
        build = Build(site_id="s")
        with pytest.raises(ValueError):
            advance_build(build, BuildStatus.SUCCESS)

        transition_build(build, BuildStatus.CANCELLED)
        with pytest.raises(InvalidStateTransitionError):
            advance_build(build, BuildStatus.CRAWLING)

    def test_stage_order(self):
        assert stages_after(None)[0] == Stage.HTML
        assert stages_after(Stage.MIGRATION) == [Stage.FINALIZE]
        assert stages_after(Stage.FINALIZE) == []

    def test_build_dict_roundtrip_keeps_status(self):
        build = Build(site_id="s", pages=["/a/"])
        advance_build(build, BuildStatus.CRAWLING)
        restored = Build.from_dict(build.to_dict())
        assert restored.status == BuildStatus.CRAWLING
        assert restored.pages == ["/a/"]
        assert restored.started_at == build.started_at


# =============================================================================
# Events
# =============================================================================

class TestBuildEventBus:
    """Per-build channels with monotonic seq."""

    def test_seq_is_per_build(self):
        bus = BuildEventBus()
        assert bus.phase("b1", "crawling", "started").seq == 1
        assert bus.phase("b1", "crawling", "completed").seq == 2
        assert bus.phase("b2", "crawling", "started").seq == 1

    def test_subscribers_receive_in_order(self):
        bus = BuildEventBus()
        first = bus.subscribe("b1")
        second = bus.subscribe("b1")
        other = bus.subscribe("b2")

        bus.progress("b1", "css", 1, 2, "css/a.css")
        bus.log("b1", LogLevel.WARN, "css", "kept original", asset_url="css/a.css", savings=None)

        for subscription in (first, second):
            events = [subscription.get(timeout=1), subscription.get(timeout=1)]
            assert [e.type for e in events] == [BuildEventType.PROGRESS, BuildEventType.LOG]
            assert events[1].data["meta"] == {"asset_url": "css/a.css"}
        with pytest.raises(queue.Empty):
            other.get(timeout=0.01)

    def test_close_channel_ends_iteration(self):
        bus = BuildEventBus()
        subscription = bus.subscribe("b1")
        bus.complete("b1", "success", {"deploy_url": "https://edge.test/"})
        bus.close_channel("b1")

        events = list(subscription)
        assert [e.type for e in events] == [BuildEventType.COMPLETE]
        assert events[0].data == {"status": "success", "deploy_url": "https://edge.test/"}
        assert bus.subscriber_count("b1") == 0

    def test_unsubscribe_on_disconnect(self):
        bus = BuildEventBus()
        subscription = bus.subscribe("b1")
        subscription.close()
        assert bus.subscriber_count("b1") == 0
        assert subscription.get(timeout=0.01) is None

    def test_lagging_subscriber_is_dropped(self, persistence):
        """A consumer that stops reading keeps a bounded buffer, then catches up by replay."""
        bus = BuildEventBus(persistence, max_pending=3)
        slow = bus.subscribe("b1")
        fast = bus.subscribe("b1")
        fast_seen = []

        for i in range(5):
            bus.progress("b1", "images", i + 1, 5)
            fast_seen.append(fast.get(timeout=1).seq)

        assert slow.lagged and slow.closed
        assert not fast.lagged
        assert fast_seen == [1, 2, 3, 4, 5]
        assert bus.subscriber_count("b1") == 1
        assert [e.seq for e in slow] == [1, 2, 3]
        assert [e.seq for e in bus.replay("b1", after_seq=3)] == [4, 5]

    def test_replay_after_reconnect(self, persistence):
        """A reconnecting consumer replays what it missed, then dedupes on seq."""
        bus = BuildEventBus(persistence)
        for i in range(4):
            bus.progress("b1", "images", i + 1, 4)

        missed = bus.replay("b1", after_seq=2)
        assert [e.seq for e in missed] == [3, 4]
        assert missed[0].data["done"] == 3

    def test_seq_resumes_from_persisted_log(self, persistence):
        bus = BuildEventBus(persistence)
        bus.phase("b1", "css", "started")
        bus.close_channel("b1")

        fresh = BuildEventBus(persistence)
        assert fresh.phase("b1", "css", "completed").seq == 2

    def test_replay_without_persistence_is_empty(self):
        bus = BuildEventBus()
        bus.phase("b1", "css", "started")
        assert bus.replay("b1") == []


# =============================================================================
# Checkpoints
# =============================================================================

class TestCheckpointStore:
    """Checkpoints survive a worker restart unless they are stale."""

    def setup_method(self):
        self.now = datetime(2026, 3, 1, 9, 0, 0)

    def clock(self):
        return self.now

    def test_save_and_load(self, persistence):
        store = CheckpointStore(persistence, max_age_seconds=3600, clock=self.clock)
        store.save(Checkpoint(build_id="b1", last_stage=Stage.CSS, page_progress={"/": "css"},
                              state={"renames": {"a.css": "a.1.css"}}))

        loaded = store.load("b1")
        assert loaded.last_stage == Stage.CSS
        assert loaded.page_progress == {"/": "css"}
        assert loaded.state["renames"] == {"a.css": "a.1.css"}
        assert loaded.updated_at == self.now

    def test_stale_checkpoint_is_discarded(self, persistence):
        store = CheckpointStore(persistence, max_age_seconds=3600, clock=self.clock)
        store.save(Checkpoint(build_id="b1", last_stage=Stage.JS))

        self.now += timedelta(hours=2)
        assert store.load("b1") is None
        assert persistence.load_checkpoint("b1") is None

    def test_per_call_max_age(self, persistence):
        store = CheckpointStore(persistence, max_age_seconds=3600, clock=self.clock)
        store.save(Checkpoint(build_id="b1"))
        self.now += timedelta(minutes=10)
        assert store.load("b1", max_age=timedelta(minutes=5)) is None

    def test_crawl_checkpoint_has_no_stage(self, persistence):
        store = CheckpointStore(persistence, clock=self.clock)
        store.save(Checkpoint(build_id="b1"))
        loaded = store.load("b1")
        assert loaded.last_stage is None
        assert stages_after(loaded.last_stage)[0] == Stage.HTML


# =============================================================================
# Workspaces
# =============================================================================

class TestPageOutputPath:

    def test_layout(self):
        assert page_output_path("/") == "index.html"
        assert page_output_path("") == "index.html"
        assert page_output_path("/about/") == "about/index.html"
        assert page_output_path("/about") == "about/index.html"
        assert page_output_path("/blog/post.html") == "blog/post.html"
        assert page_output_path("/search/?q=1#top") == "search/index.html"

    def test_dot_segments_are_normalised(self):
        assert page_output_path("/a/../../etc/") == "etc/index.html"


class TestWorkspaceManager:
    """At most one build holds a site's workspace."""

    def test_busy_workspace(self, tmp_path):
        manager = WorkspaceManager(tmp_path)
        manager.acquire("site-1", "b1")

        with pytest.raises(WorkspaceBusyError) as exc:
            manager.acquire("site-1", "b2")
        assert exc.value.holder_build_id == "b1"

        manager.acquire("site-1", "b1")
        manager.acquire("site-2", "b2")

    def test_release_only_by_holder(self, tmp_path):
        manager = WorkspaceManager(tmp_path)
        manager.acquire("site-1", "b1")
        assert manager.release("site-1", "b2") is False
        assert manager.holder("site-1") == "b1"
        assert manager.release("site-1") is True
        assert manager.holder("site-1") is None

    def test_hold_releases_on_error(self, tmp_path):
        manager = WorkspaceManager(tmp_path)
        with pytest.raises(RuntimeError):
            with manager.hold("site-1", "b1"):
                raise RuntimeError("boom")
        assert manager.holder("site-1") is None

    def test_remove_refused_while_held(self, tmp_path):
        manager = WorkspaceManager(tmp_path)
        workspace = manager.acquire("site-1", "b1")
        workspace.prepare()

        assert manager.remove("site-1") is False
        assert workspace.root.exists()

        manager.release("site-1", "b1")
        assert manager.remove("site-1") is True
        assert not workspace.root.exists()


class TestWorkspace:

    def test_work_tree_roundtrip(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).acquire("site-1", "b1")
        workspace.prepare()
        workspace.write_work_tree("crawl", {"/about/": "<p>About</p>"}, {"css/site.css": b"body{}"})

        assert workspace.has_work_tree("crawl")
        assert not workspace.has_work_tree("css")
        assert workspace.read_page("crawl", "/about/") == "<p>About</p>"
        assert workspace.read_file("crawl", "css/site.css") == b"body{}"
        assert workspace.read_file("crawl", "missing.css") is None
        assert workspace.list_files("crawl") == ["css/site.css"]
        assert workspace.list_files("css") == []

    def test_rewriting_a_tree_replaces_it(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).acquire("site-1", "b1")
        workspace.prepare()
        workspace.write_work_tree("css", {}, {"css/site.css": b"a{}"})
        workspace.write_work_tree("css", {}, {"css/site.1234abcd.css": b"a{}"})

        assert workspace.list_files("css") == ["css/site.1234abcd.css"]
        assert sorted(p.name for p in workspace.work_dir.iterdir()) == ["css"]

    def test_prune_keeps_only_named_tree(self, tmp_path):
        """Earlier trees survive until the tree that supersedes them is kept."""
        workspace = WorkspaceManager(tmp_path).acquire("site-1", "b1")
        workspace.prepare()
        workspace.write_work_tree("crawl", {"/": "<p>v1</p>"}, {})
        workspace.write_work_tree("css", {"/": "<p>v2</p>"}, {})
        (workspace.work_dir / ".staging-js").mkdir()

        assert workspace.read_page("crawl", "/") == "<p>v1</p>"
        workspace.prune_work_trees(keep="css")

        assert sorted(p.name for p in workspace.work_dir.iterdir()) == ["css"]
        assert workspace.read_page("css", "/") == "<p>v2</p>"

    def test_prepare_discards_previous_trees(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).acquire("site-1", "b1")
        workspace.prepare()
        workspace.write_work_tree("crawl", {}, {"old.js": b"1"})
        workspace.prepare()
        assert not workspace.has_work_tree("crawl")

    def test_paths_cannot_escape(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).acquire("site-1", "b1")
        workspace.prepare()
        with pytest.raises(WorkspaceError):
            workspace.write_work_tree("crawl", {}, {"../../outside.txt": b"x"})
        with pytest.raises(WorkspaceError):
            workspace.write_work_tree("../crawl", {}, {})

    def test_write_output(self, tmp_path):
        workspace = WorkspaceManager(tmp_path).acquire("site-1", "b1")
        output = workspace.write_output({"/": "<h1>Home</h1>", "/blog/": "<h1>Blog</h1>"},
                                        {"css/site.1234abcd.css": b"h1{}"})
        assert (output / "index.html").read_text() == "<h1>Home</h1>"
        assert (output / "blog" / "index.html").exists()
        assert (output / "css" / "site.1234abcd.css").read_bytes() == b"h1{}"


# =============================================================================
# Build context
# =============================================================================

def make_context(tmp_path, asset_overrides=(), cancel_check=None, site_override=None):
    build = Build(site_id="site-1")
    workspace = WorkspaceManager(tmp_path).acquire("site-1", build.id)
    return BuildContext(build, "https://example.com/", workspace, site_override or {},
                        list(asset_overrides), cancel_check=cancel_check)


class TestBuildContext:

    def test_local_path(self, tmp_path):
        ctx = make_context(tmp_path)
        page = "https://example.com/blog/post/"
        assert ctx.local_path("/img/a.jpg", page) == "img/a.jpg"
        assert ctx.local_path("../b.png", page) == "blog/b.png"
        assert ctx.local_path("https://example.com/c%20d.png", page) == "c d.png"
        assert ctx.local_path("https://cdn.other.com/x.png", page) is None
        assert ctx.local_path("data:image/png;base64,AAAA", page) is None
        assert ctx.local_path("#anchor", page) is None
        assert ctx.local_path("", page) is None

    def test_file_url(self, tmp_path):
        assert make_context(tmp_path).file_url("css/a.css") == "https://example.com/css/a.css"

    def test_settings_for_applies_matching_overrides(self, tmp_path):
        override = AssetOverride(id="o1", site_id="site-1", url_pattern="**/hero/**",
                                 settings={"images": {"webp": {"quality": 95}}})
        ctx = make_context(tmp_path, [override])

        assert ctx.settings_for("https://example.com/img/hero/a.jpg").images.webp.quality == 95
        assert ctx.settings_for("https://example.com/img/a.jpg").images.webp.quality == 80
        assert ctx.settings_for("https://example.com/img/a.jpg") is ctx.settings

    def test_check_cancelled(self, tmp_path):
        reason = {"value": None}
        ctx = make_context(tmp_path, cancel_check=lambda: reason["value"])
        ctx.check_cancelled()

        reason["value"] = "Site deleted"
        with pytest.raises(BuildCancelledError) as exc:
            ctx.check_cancelled()
        assert exc.value.reason == "Site deleted"

    def test_state_roundtrip_through_workspace(self, tmp_path):
        ctx = make_context(tmp_path)
        ctx.workspace.prepare()
        ctx.pages["/"] = PageState(path="/", url="https://example.com/", html="<p>hi</p>")
        ctx.files["img/a.jpg"] = b"jpeg"
        ctx.renames["css/a.css"] = "css/a.11112222.css"
        ctx.image_dimensions["img/a.jpg"] = (800, 600)
        ctx.stats.scripts_removed = 2
        ctx.save_to_workspace("seo")

        restored = make_context(tmp_path)
        assert ctx.to_state()["work_tree"] == "seo"
        restored.restore(ctx.to_state())
        assert restored.pages["/"].html == "<p>hi</p>"
        assert restored.files == {"img/a.jpg": b"jpeg"}
        assert restored.renames == {"css/a.css": "css/a.11112222.css"}
        assert restored.image_dimensions == {"img/a.jpg": (800, 600)}
        assert restored.stats.scripts_removed == 2
