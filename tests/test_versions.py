"""
Tests for append-only script / scene versioning.
"""

from ugcflow.pipeline.versions import current_view, full_text, next_version


class TestNextVersion:
    def test_first_version_is_one(self):
        assert next_version([]) == 1

    def test_max_plus_one_regardless_of_order(self):
        rows = [{"version": 2}, {"version": 5}, {"version": 1}]
        assert next_version(rows) == 6

    def test_store_uses_project_scripts_only(self, store, fake_db):
        fake_db.table("script").insert([
            {"project_id": "p1", "version": 1},
            {"project_id": "p1", "version": 3},
            {"project_id": "p2", "version": 9},
        ]).execute()
        assert store.next_script_version("p1") == 4
        assert store.next_script_version("p3") == 1


class TestCurrentView:
    def test_one_row_per_segment_with_max_version(self):
        rows = [
            {"segment_index": 1, "version": 1, "script_text": "old b"},
            {"segment_index": 0, "version": 1, "script_text": "a"},
            {"segment_index": 1, "version": 3, "script_text": "newest b"},
            {"segment_index": 1, "version": 2, "script_text": "newer b"},
        ]
        view = current_view(rows)

        assert [r["segment_index"] for r in view] == [0, 1]
        assert view[1]["script_text"] == "newest b"

    def test_regeneration_keeps_prior_rows(self, store, seed_script, make_project, fake_db):
        project = make_project()
        script, _ = seed_script(project["id"], segments=2)
        version = store.next_scene_version(script["id"], 1)
        store.insert_scenes([{
            "script_id": script["id"], "segment_index": 1, "version": version,
            "script_text": "rewritten",
        }])

        assert version == 2
        assert len(fake_db.rows("scene", script_id=script["id"])) == 3
        current = store.current_scenes(script["id"])
        assert [s["script_text"] for s in current] == [
            "Segment 0 line about the serum.", "rewritten",
        ]

    def test_full_text_joins_scenes(self):
        assert full_text([{"script_text": "a"}, {"script_text": "b"}]) == "a\n\nb"
