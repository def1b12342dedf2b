"""
Pytest Configuration and Fixtures

An in-memory stand-in for the Supabase client (table query builder + rpc)
so the real ProjectStore runs against it, plus fake generation providers.
"""

import copy
import threading
import uuid

import pytest

from ugcflow.config import StageTuning
from ugcflow.pipeline.errors import ProviderError
from ugcflow.pipeline.store import ProjectStore
from ugcflow.wavespeed import PollResult


# ── Fake Supabase ─────────────────────────────────────────────────────────────

class _Result:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.order_by = []
        self.row_limit = None

    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows
        return self

    def update(self, fields):
        self.op = "update"
        self.payload = fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by.append((column, desc))
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        if self.table in self.db.failing_tables:
            raise RuntimeError(f"table {self.table} unavailable")
        with self.db.lock:
            rows = self.db.tables.setdefault(self.table, [])

            if self.op == "insert":
                payload = self.payload if isinstance(self.payload, list) else [self.payload]
                inserted = []
                for item in payload:
                    row = {"id": str(uuid.uuid4()), **copy.deepcopy(item)}
                    rows.append(row)
                    inserted.append(copy.deepcopy(row))
                return _Result(inserted)

            matched = [row for row in rows if self._matches(row)]

            if self.op == "update":
                for row in matched:
                    row.update(copy.deepcopy(self.payload))
                return _Result(copy.deepcopy(matched))

            if self.op == "delete":
                self.db.tables[self.table] = [row for row in rows if not self._matches(row)]
                return _Result(copy.deepcopy(matched))

            result = copy.deepcopy(matched)
            for column, desc in reversed(self.order_by):
                result.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
            if self.row_limit is not None:
                result = result[:self.row_limit]
            return _Result(result)


class _RpcCall:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        if self.db.rpc_disabled:
            raise RuntimeError(f"function {self.name} does not exist")
        if self.name != "increment_project_cost":
            raise RuntimeError(f"unknown rpc {self.name}")
        with self.db.lock:
            for row in self.db.tables.get("project", []):
                if row["id"] == self.params["p_project_id"]:
                    current = float(row.get("cost_usd") or 0)
                    row["cost_usd"] = round(current + self.params["p_amount"], 4)
        return _Result(None)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.lock = threading.Lock()
        self.rpc_disabled = False
        self.failing_tables = set()

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return _RpcCall(self, name, params)

    # test helpers

    def rows(self, table, **where):
        return [
            row for row in self.tables.get(table, [])
            if all(row.get(k) == v for k, v in where.items())
        ]

    def events(self, event_type=None):
        rows = self.tables.get("generation_log", [])
        if event_type is None:
            return list(rows)
        return [row for row in rows if row["event_type"] == event_type]


# ── Fake providers ────────────────────────────────────────────────────────────

class FakeLLM:
    """Returns queued responses in order; the last one repeats."""

    name = "wavespeed"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def chat_completion(self, system_prompt, user_prompt, temperature=0.7,
                              max_tokens=4096, model=None):
        self.calls.append({
            "system": system_prompt,
            "user": user_prompt,
            "temperature": temperature,
        })
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FakeMedia:
    """
    Image/video provider. ``fail_submit(call)`` decides per submission
    whether to raise a ProviderError instead of returning a task id.
    """

    name = "wavespeed"

    def __init__(self, fail_submit=None, fail_poll=None):
        self.fail_submit = fail_submit
        self.fail_poll = fail_poll
        self.submissions = []
        self.polls = []

    def _submit(self, kind, **fields):
        task_id = f"task-{len(self.submissions) + 1}"
        call = {"kind": kind, "task_id": task_id, **fields}
        self.submissions.append(call)
        if self.fail_submit and self.fail_submit(call):
            raise ProviderError(self.name, f"{kind} submission rejected")
        return task_id

    async def generate_image(self, prompt, aspect_ratio="9:16"):
        return self._submit("generate_image", prompt=prompt)

    async def edit_image(self, images, prompt, aspect_ratio="9:16", resolution="1k"):
        return self._submit("edit_image", images=list(images), prompt=prompt)

    async def generate_video(self, image, prompt, tail_image=None, multi_prompt=None,
                             negative_prompt="", duration=15, cfg_scale=0.5):
        return self._submit("generate_video", image=image, tail_image=tail_image, prompt=prompt)

    async def poll_result(self, task_id, max_wait=300, interval=10, cancel_check=None):
        self.polls.append(task_id)
        if cancel_check is not None and cancel_check():
            return PollResult("cancelled")
        if self.fail_poll and self.fail_poll(task_id):
            raise ProviderError(self.name, f"task {task_id} failed")
        return PollResult("completed", f"https://cdn.test/{task_id}.png")


class FakeTTS:
    name = "elevenlabs"

    def __init__(self, seconds=14.0, valid_voices=(), fail_text=None):
        self.seconds = seconds
        self.valid_voices = set(valid_voices)
        self.fail_text = fail_text
        self.calls = []

    async def text_to_speech(self, voice_id, text):
        self.calls.append((voice_id, text))
        if self.fail_text and self.fail_text in text:
            raise ProviderError(self.name, "TTS error (500)")
        return b"\x00" * int(self.seconds * 16000)

    async def is_voice_valid(self, voice_id):
        return voice_id in self.valid_voices


class FakeRenderer:
    name = "creatomate"

    def __init__(self, failures=0):
        self.failures = failures
        self.renders = []

    async def render(self, template_id, modifications, max_width=None, max_height=None):
        self.renders.append(copy.deepcopy(modifications))
        if len(self.renders) <= self.failures:
            raise ProviderError(self.name, "render returned 500")
        return f"render-{len(self.renders)}"

    async def poll_result(self, render_id, max_wait=300, interval=5, cancel_check=None):
        if cancel_check is not None and cancel_check():
            return PollResult("cancelled")
        return PollResult("completed", f"https://cdn.test/{render_id}.mp4")


class FakeUpload:
    def __init__(self):
        self.uploads = []

    async def __call__(self, project_id, filename, data, content_type="audio/mpeg"):
        self.uploads.append((project_id, filename, len(data)))
        return f"https://r2.test/projects/{project_id}/{filename}"


# ── Fixtures ──────────────────────────────────────────────────────────────────

FAST_TUNING = StageTuning(poll_max_wait=1, poll_interval=0, unit_attempts=2, unit_retry_delay=0)


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def store(fake_db):
    return ProjectStore(client=fake_db)


@pytest.fixture
def tuning():
    return FAST_TUNING


@pytest.fixture
def make_project(fake_db):
    def _make(**fields):
        row = {
            "status": "created",
            "product_name": "GlowSerum",
            "product_url": "https://shop.test/glowserum",
            "product_category": "skincare",
            "product_data": {
                "product_name": "GlowSerum",
                "category": "skincare",
                "selling_points": ["vitamin C", "fast absorbing"],
                "hook_angle": "before/after",
            },
            "cost_usd": 0,
            "cancel_requested_at": None,
            "error_message": None,
            "failed_at_status": None,
            **fields,
        }
        return fake_db.table("project").insert(row).execute().data[0]
    return _make


@pytest.fixture
def seed_script(fake_db):
    """Insert a script with ``segments`` current scenes; returns (script, scenes)."""
    def _seed(project_id, segments=4, version=1):
        script = fake_db.table("script").insert({
            "project_id": project_id,
            "version": version,
            "full_text": "",
            "tone": "authentic",
        }).execute().data[0]
        scenes = fake_db.table("scene").insert([
            {
                "script_id": script["id"],
                "segment_index": i,
                "version": 1,
                "section": f"Section {i + 1}",
                "script_text": f"Segment {i} line about the serum.",
                "text_overlay": f"Caption {i + 1}",
                "shot_scripts": [{"index": 0, "text": "a"}, {"index": 1, "text": "b"}],
            }
            for i in range(segments)
        ]).execute().data
        return script, scenes
    return _seed


@pytest.fixture
def add_asset(fake_db):
    def _add(project_id, asset_type, scene_id=None, status="completed", url=None, **fields):
        return fake_db.table("asset").insert({
            "project_id": project_id,
            "scene_id": scene_id,
            "type": asset_type,
            "status": status,
            "url": url if url is not None else f"https://cdn.test/{asset_type}-{uuid.uuid4().hex[:6]}",
            "metadata": {},
            **fields,
        }).execute().data[0]
    return _add
