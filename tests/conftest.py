"""
Shared fixtures and factories
"""

from pathlib import Path
from typing import Dict

import pytest
import yaml

from feed_writer.models import CandidateEntry, ExtractedFacts, GenerationRequest, GenerationResult
from feed_writer.processing.dedupe import DuplicateResolver
from feed_writer.storage.file_store import FileStore

REPO_TEMPLATES_DIR = Path(__file__).parent.parent / "templates"


def make_entry(title: str = "呪術廻戦×アニメイトカフェ開催決定", link: str = "https://example.com/a1", **kwargs) -> CandidateEntry:
    """Helper to create test entry"""
    return CandidateEntry(title=title, link=link, **kwargs)


def make_facts(work: str = "呪術廻戦", venue: str = "アニメイトカフェ池袋", **kwargs) -> ExtractedFacts:
    """Helper to create extracted facts"""
    kwargs.setdefault("event_type", "コラボカフェ")
    kwargs.setdefault("start_date", "2025-12-25")
    return ExtractedFacts(work_title=work, venue=venue, **kwargs)


def make_request(canonical_key: str = "jujutsu-kaisen:animate-cafe:collabo-cafe:2025", **kwargs) -> GenerationRequest:
    return GenerationRequest(
        entry=kwargs.pop("entry", make_entry()),
        facts=kwargs.pop("facts", make_facts()),
        canonical_key=canonical_key,
        **kwargs
    )


def make_article(title: str = "呪術廻戦コラボカフェが池袋で開催！", body: str = "## 開催概要\n本文", **kwargs) -> GenerationResult:
    return GenerationResult(title=title, body=body, **kwargs)


def write_template(root: Path, template_id: str, files: Dict[str, dict]) -> Path:
    """
    建立 template 目錄

    Args:
        root: templates_dir
        template_id: Template ID
        files: 相對路徑 -> 要寫成 YAML 的 dict
    """
    base = root / template_id
    for rel_path, data in files.items():
        path = base / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
    return base


def basic_template_files() -> Dict[str, dict]:
    """extraction + generation (使用 sections) 的最小 template"""
    return {
        "_meta.yaml": {
            "meta": {"id": "basic", "name": "Basic", "version": "1.2.0"},
            "pipeline": {
                "order": ["extraction", "generation"],
                "dependencies": {"generation": {"requires": ["extraction"]}},
            },
            "sections": {"order": ["intro", "body"]},
            "shared": ["placeholders.yaml"],
        },
        "shared/placeholders.yaml": {
            "placeholders": {
                "required": [{"name": "work_title", "type": "string"}],
                "optional": [{"name": "end_date", "type": "date"}],
            },
        },
        "pipeline/extraction.yaml": {"prompts": {"user": "extract {{title}}"}},
        "pipeline/generation.yaml": {
            "sections_reference": {"source": "sections", "assembly_order": "from_meta"},
            "prompts": {"system": "writer", "user": "write about {{work_title}}"},
        },
        "sections/intro.yaml": {
            "section": {"id": "intro", "order": 1},
            "required_placeholders": ["work_title"],
            "templates": {"default": "Intro {{work_title}}"},
        },
        "sections/body.yaml": {
            "section": {"id": "body", "order": 2},
            "optional_placeholders": ["end_date"],
            "templates": {"default": "Body until {{end_date}}"},
        },
    }


@pytest.fixture
def file_store(tmp_path) -> FileStore:
    return FileStore(str(tmp_path / "memory"))


@pytest.fixture
def resolver(file_store) -> DuplicateResolver:
    return DuplicateResolver(file_store)
