"""
LLM-backed extraction and generation collaborators

LLMFactExtractor: 候選文章 -> ExtractedFacts (canonical key 的來源)
LLMArticleGenerator: GenerationRequest + MergedTemplate -> GenerationResult
"""

from typing import Any, Dict, List
import json
import logging

import yaml
from pydantic import BaseModel, Field

from feed_writer.generation.llm import LLMClient
from feed_writer.models import CandidateEntry, ExtractedFacts, GenerationRequest, GenerationResult
from feed_writer.processing.url_normalize import is_allowed_domain
from feed_writer.templating.resolver import render, render_text
from feed_writer.templating.schema import MergedTemplate

logger = logging.getLogger(__name__)

EXTRACTION_STEP = "extraction"
GENERATION_STEP = "generation"

DEFAULT_EXTRACTION_PROMPT = """以下の記事から、イベントの情報を抽出してください。
作品名 (work_title)、主な会場・店舗名 (venue)、イベント種別 (event_type)、
開始日 (start_date, YYYY-MM-DD)、終了日 (end_date)、開催年 (event_year)、公式URL (official_url)。
不明な項目は null にしてください。JSON のみで回答してください。"""

DEFAULT_GENERATION_PROMPT = """以下の抽出データと構成に従って、記事を作成してください。
JSON (title, body, excerpt, tags, categories) のみで回答してください。"""

MAX_SOURCE_CHARS = 6000


class ArticlePayload(BaseModel):
    """LLM 的生成結果 (JSON)"""
    title: str
    body: str
    excerpt: str = ""
    tags: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)


def entry_values(entry: CandidateEntry) -> Dict[str, Any]:
    return {
        "title": entry.title,
        "link": entry.link,
        "description": entry.description or "",
        "pub_date": entry.pub_date or "",
        "categories": entry.categories,
        "source_title": entry.source_title or "",
    }


def _describe_placeholders(template: MergedTemplate) -> str:
    lines = []
    for label, definitions in (("required", template.required_placeholders),
                               ("optional", template.optional_placeholders)):
        for name, definition in definitions.items():
            hint = definition.extraction_hint or definition.description or ""
            fmt = f" ({definition.format})" if definition.format else ""
            lines.append(f"- {name} [{label}, {definition.type}{fmt}]: {hint}".rstrip(": "))
    return "\n".join(lines)


def count_words(text: str) -> int:
    """日文以字元數計 (不含空白)"""
    return len("".join(text.split()))


class LLMFactExtractor:
    """候選文章的語意 facts 抽取"""

    def __init__(self, llm: LLMClient, step_name: str = EXTRACTION_STEP):
        self.llm = llm
        self.step_name = step_name

    def build_prompt(self, entry: CandidateEntry, template: MergedTemplate) -> tuple:
        step = template.step(self.step_name)
        values = entry_values(entry)

        system = None
        instructions = DEFAULT_EXTRACTION_PROMPT
        if step is not None:
            system = step.prompts.get("system")
            instructions, _ = render_text(step.prompts.get("user", instructions), values)

        parts = [instructions]
        placeholders = _describe_placeholders(template)
        if placeholders:
            parts.append("## 抽出項目\n" + placeholders)
        parts.append("## 記事\n" + json.dumps({
            "title": entry.title,
            "link": entry.link,
            "published": entry.pub_date,
            "categories": entry.categories,
            "body": entry.body_text[:MAX_SOURCE_CHARS],
        }, ensure_ascii=False, indent=2))
        return "\n\n".join(parts), system

    def extract(self, entry: CandidateEntry, template: MergedTemplate) -> ExtractedFacts:
        """
        抽取 facts

        Args:
            entry: 候選文章
            template: MergedTemplate (extraction step 的 prompt 與 placeholder 定義)

        Returns:
            ExtractedFacts

        Raises:
            ProviderError: LLM 失敗或回應不符 schema
        """
        prompt, system = self.build_prompt(entry, template)
        facts = self.llm.call_structured(prompt, ExtractedFacts, system=system, step="extract")

        allowed = template.allowed_domains()
        if facts.official_url and not is_allowed_domain(facts.official_url, allowed):
            logger.warning(f"Dropping official_url outside allowed domains: {facts.official_url}")
            facts = facts.model_copy(update={"official_url": None})

        logger.info(f"✓ Extracted facts: {facts.work_title} @ {facts.venue}")
        return facts


class LLMArticleGenerator:
    """MergedTemplate 驅動的文章生成"""

    def __init__(self, llm: LLMClient, step_name: str = GENERATION_STEP):
        self.llm = llm
        self.step_name = step_name

    @staticmethod
    def values(request: GenerationRequest) -> Dict[str, Any]:
        values = entry_values(request.entry)
        values.update(request.options.as_context())
        values.update(request.facts.model_dump(mode="json", exclude_none=True))
        values["canonical_key"] = request.canonical_key
        return values

    def build_prompt(self, request: GenerationRequest, template: MergedTemplate) -> tuple:
        """
        組合 prompt

        Raises:
            TemplateRenderError: section 缺少 required placeholder
        """
        values = self.values(request)
        step = template.step(self.step_name)

        system = None
        instructions = DEFAULT_GENERATION_PROMPT
        if step is not None:
            system = step.prompts.get("system")
            instructions, _ = render_text(step.prompts.get("user", instructions), values)

        parts = [instructions]
        if template.constraints:
            constraints = {k: v.model_dump(exclude_none=True, exclude_defaults=True)
                           for k, v in template.constraints.items()}
            parts.append("## 制約\n" + yaml.safe_dump(constraints, allow_unicode=True, sort_keys=False))
        if template.sections:
            parts.append("## 構成\n" + render(template, values))
        parts.append("## 抽出データ\n" + json.dumps(
            request.facts.model_dump(mode="json"), ensure_ascii=False, indent=2
        ))
        return "\n\n".join(parts), system

    def _check_constraints(self, payload: ArticlePayload, template: MergedTemplate) -> None:
        title_rule = template.constraints.get("title")
        if title_rule and title_rule.length and title_rule.length.max:
            if len(payload.title) > title_rule.length.max:
                logger.warning(f"Generated title exceeds {title_rule.length.max} chars: {payload.title}")

    def generate(self, request: GenerationRequest, template: MergedTemplate) -> GenerationResult:
        """
        生成文章

        Args:
            request: GenerationRequest
            template: MergedTemplate

        Returns:
            GenerationResult

        Raises:
            ProviderError / RateLimitError: LLM 失敗
        """
        prompt, system = self.build_prompt(request, template)
        payload = self.llm.call_structured(prompt, ArticlePayload, system=system, step="generate")
        self._check_constraints(payload, template)

        result = GenerationResult(
            title=payload.title,
            body=payload.body,
            excerpt=payload.excerpt,
            tags=payload.tags,
            categories=payload.categories,
            word_count=count_words(payload.body),
            model=self.llm.model,
        )
        logger.info(f"✓ Generated article: {result.title} ({result.word_count} chars)")
        return result
