"""Shared fixtures: an in-memory store and a scripted generation backend."""

import json
import re
import threading
from collections import defaultdict, deque
from dataclasses import dataclass

import pytest

from neverending.agents import judge, memory, outline_architect, voice_editor, writer
from neverending.config import Config, GenerationConfig, StoreConfig
from neverending.generation import TIERS, GenerationBackend, GenerationClient, GenerationResult, Usage
from neverending.models import CharacterProfile, OutlineEntry, Work
from neverending.pipeline import BatchPipeline
from neverending.state_machine import WorkStateMachine
from neverending.store import WorkStore

ROLES = [
    ("outline", outline_architect.SYSTEM),
    ("write", writer.SYSTEM),
    ("judge", judge.SYSTEM),
    ("extract", memory.EXTRACT_SYSTEM),
    ("compress", memory.COMPRESS_SYSTEM),
    ("voice", voice_editor.REVIEW_SYSTEM),
    ("repair", voice_editor.REPAIR_SYSTEM),
]

CAST = ["Mara", "Tobin"]


def role_of(system: str) -> str:
    for role, prefix in ROLES:
        if system.startswith(prefix):
            return role
    raise AssertionError(f"Unrecognized system prompt: {system[:60]}")


def chapter_in(prompt: str, pattern: str) -> int:
    m = re.search(pattern, prompt)
    return int(m.group(1)) if m else 0


def judge_reply(score: float) -> dict:
    return {
        "scores": {d: {"score": score, "evidence": "fine"} for d in judge.DIMENSION_HINTS},
        "deficiencies": [] if score >= 7.5 else ["dialogue is flat"],
    }


def default_reply(role: str, prompt: str):
    if role == "outline":
        return {
            "chapters": [
                {"chapter_number": i, "title": f"Part {i}", "summary": f"Things happen in part {i}."}
                for i in range(1, 13)
            ],
            "characters": [{"name": n, "role": "lead"} for n in CAST],
        }
    if role == "write":
        n = chapter_in(prompt, r"Write chapter (\d+) in full")
        return (
            f"Chapter {n} opens on the harbor. Mara watched the boats come in. "
            f"Tobin said nothing for a long while. The tide turned. " * 5
        ).strip()
    if role == "judge":
        return judge_reply(8.0)
    if role == "extract":
        n = chapter_in(prompt, r"Record the ledger for chapter (\d+)")
        return {
            "characters": {
                "Mara": {"emotional_state": f"wary in chapter {n}", "chapter_experience": "watched boats"},
                "Tobin": {"emotional_state": "quiet"},
            },
            "callbacks": [{"source_chapter": n, "moment": f"the tide of chapter {n}", "status": "ripe"}],
        }
    if role == "compress":
        return "Mara stays wary of Tobin; the tide remains unexplained."
    if role == "voice":
        return {"characters": [{"name": n, "score": 0.95, "flags": []} for n in CAST], "missed_callbacks": []}
    if role == "repair":
        return {"edits": [], "insertions": []}
    raise AssertionError(role)


@dataclass
class Call:
    role: str
    system: str
    prompt: str


class ScriptedBackend(GenerationBackend):
    """Answers each agent by its system prompt. Queued replies win over defaults.

    A queued reply may be a string, a JSON-able object, an exception to raise,
    or a callable taking the prompt.
    """

    def __init__(self):
        self.calls: list[Call] = []
        self.queues: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def queue(self, role: str, *replies):
        self.queues[role].extend(replies)

    def calls_for(self, role: str) -> list[Call]:
        return [c for c in self.calls if c.role == role]

    def complete(self, system, prompt, max_tokens, temperature=None) -> GenerationResult:
        role = role_of(system)
        with self._lock:
            self.calls.append(Call(role, system, prompt))
            reply = self.queues[role].popleft() if self.queues[role] else None
        if reply is None:
            reply = default_reply(role, prompt)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        text = reply if isinstance(reply, str) else json.dumps(reply)
        return GenerationResult(text=text, usage=Usage(len(prompt) // 4, len(text) // 4))


@pytest.fixture
def config():
    return Config(
        generation=GenerationConfig(retry_backoff_seconds=0, retry_backoff_max_seconds=0),
        store=StoreConfig(path=":memory:"),
    )


@pytest.fixture
def store():
    s = WorkStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def client(config, backend):
    return GenerationClient(config.generation, backends={t: backend for t in TIERS})


@pytest.fixture
def pipeline(config, client, store):
    return BatchPipeline(config, client, store)


@pytest.fixture
def machine(store, pipeline):
    return WorkStateMachine(store, pipeline)


def outline_for_test(n: int = 12) -> list[OutlineEntry]:
    return [OutlineEntry(chapter_number=i, title=f"Part {i}", summary=f"Part {i} plan") for i in range(1, n + 1)]


@pytest.fixture
def make_work(store):
    def _make(work_id: str = "w1", reader_id=None, **kwargs) -> Work:
        work = Work(
            id=work_id,
            title="Harbor Lights",
            premise="Two strangers keep a lighthouse running through one winter.",
            reader_id=reader_id,
            outline=kwargs.pop("outline", outline_for_test()),
            characters=[CharacterProfile(name=n) for n in CAST],
            **kwargs,
        )
        return store.create_work(work)

    return _make
