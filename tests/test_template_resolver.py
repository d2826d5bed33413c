"""
Tests for the modular template resolver
"""

import pytest

from feed_writer.errors import (
    ConditionSyntaxError,
    TemplateIntegrityError,
    TemplateNotFoundError,
    TemplateRenderError,
)
from feed_writer.templating.resolver import TemplateResolver, render, render_text

from conftest import REPO_TEMPLATES_DIR, basic_template_files, write_template


@pytest.fixture
def templates_dir(tmp_path):
    return tmp_path / "templates"


def resolve_basic(templates_dir, files=None, options=None, debug=False):
    write_template(templates_dir, "basic", files or basic_template_files())
    return TemplateResolver(templates_dir).resolve("basic", options, debug=debug)


def test_basic_merge(templates_dir):
    merged = resolve_basic(templates_dir)

    assert merged.template_id == "basic"
    assert merged.meta.version == "1.2.0"
    assert merged.step_names == ["extraction", "generation"]
    assert list(merged.required_placeholders) == ["work_title"]
    assert list(merged.optional_placeholders) == ["end_date"]
    assert [s.id for s in merged.sections] == ["intro", "body"]
    assert merged.step("generation").uses_sections is True
    assert merged.step("missing") is None


def test_unknown_template(templates_dir):
    with pytest.raises(TemplateNotFoundError):
        TemplateResolver(templates_dir).resolve("nope")


def test_list_templates(templates_dir):
    write_template(templates_dir, "basic", basic_template_files())
    (templates_dir / "not-a-template").mkdir()

    assert TemplateResolver(templates_dir).list_templates() == ["basic"]


def test_missing_shared_file(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["shared"].append("constraints.yaml")

    with pytest.raises(TemplateIntegrityError, match="Missing shared file"):
        resolve_basic(templates_dir, files)


def test_placeholder_collision(templates_dir):
    """兩個 shared 檔定義同名 placeholder"""
    files = basic_template_files()
    files["_meta.yaml"]["shared"].append("extra.yaml")
    files["shared/extra.yaml"] = {"placeholders": {"optional": [{"name": "work_title"}]}}

    with pytest.raises(TemplateIntegrityError, match="work_title"):
        resolve_basic(templates_dir, files)


def test_invalid_yaml(templates_dir):
    write_template(templates_dir, "basic", basic_template_files())
    (templates_dir / "basic" / "sections" / "body.yaml").write_text("section: [unclosed", encoding="utf-8")

    with pytest.raises(TemplateIntegrityError, match="Invalid YAML"):
        TemplateResolver(templates_dir).resolve("basic")


def test_missing_pipeline_file(templates_dir):
    files = basic_template_files()
    del files["pipeline/extraction.yaml"]

    with pytest.raises(TemplateIntegrityError, match="Missing pipeline file"):
        resolve_basic(templates_dir, files)


def test_cyclic_dependency(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["pipeline"]["dependencies"]["extraction"] = {"requires": ["generation"]}

    with pytest.raises(TemplateIntegrityError, match="Cyclic"):
        resolve_basic(templates_dir, files)


def test_unknown_required_step(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["pipeline"]["dependencies"]["generation"]["requires"].append("research")

    with pytest.raises(TemplateIntegrityError, match="research"):
        resolve_basic(templates_dir, files)


def test_dependency_order_wins_over_declaration(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["pipeline"]["order"] = ["generation", "extraction"]

    merged = resolve_basic(templates_dir, files)

    assert merged.step_names == ["extraction", "generation"]


def test_conditional_step_and_dependents_skipped(templates_dir):
    """條件不成立的 step 與依賴它的 step 一併省略"""
    files = basic_template_files()
    pipeline = files["_meta.yaml"]["pipeline"]
    pipeline["order"] += ["summary", "polish"]
    pipeline["dependencies"]["summary"] = {"requires": ["generation"], "condition": "include_summary == true"}
    pipeline["dependencies"]["polish"] = {"requires": ["summary"]}
    files["pipeline/summary.yaml"] = {"prompts": {"user": "summarize"}}
    files["pipeline/polish.yaml"] = {"prompts": {"user": "polish"}}

    skipped = resolve_basic(templates_dir, files)
    assert skipped.step_names == ["extraction", "generation"]
    assert skipped.skipped_steps == ["summary", "polish"]

    included = TemplateResolver(templates_dir).resolve("basic", {"include_summary": True})
    assert included.step_names == ["extraction", "generation", "summary", "polish"]


def test_bad_step_condition(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["pipeline"]["dependencies"]["generation"]["condition"] = "tone =="

    with pytest.raises(ConditionSyntaxError):
        resolve_basic(templates_dir, files)


def test_unknown_section_reference(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["sections"]["order"].append("faq")

    with pytest.raises(TemplateIntegrityError, match="faq"):
        resolve_basic(templates_dir, files)


def test_skip_if_for_unknown_section(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["sections"]["conditional"] = {"faq": {"skip_if": "true"}}

    with pytest.raises(TemplateIntegrityError, match="faq"):
        resolve_basic(templates_dir, files)


def test_ambiguous_section_order(templates_dir):
    files = basic_template_files()
    files["sections/body.yaml"]["section"]["order"] = 1

    with pytest.raises(TemplateIntegrityError, match="Ambiguous section order 1"):
        resolve_basic(templates_dir, files)


def test_section_order_number_wins(templates_dir):
    """from_meta: 以 section 的 order 排序，而非清單順序"""
    files = basic_template_files()
    files["_meta.yaml"]["sections"]["order"] = ["body", "intro"]

    merged = resolve_basic(templates_dir, files)

    assert [s.id for s in merged.sections] == ["intro", "body"]


def test_explicit_assembly_order(templates_dir):
    files = basic_template_files()
    files["pipeline/generation.yaml"]["sections_reference"] = {
        "source": "sections", "assembly_order": "explicit", "order": ["body", "intro"]
    }
    files["sections/body.yaml"]["section"]["order"] = 1

    merged = resolve_basic(templates_dir, files)

    assert [s.id for s in merged.sections] == ["body", "intro"]


def test_skip_if(templates_dir):
    files = basic_template_files()
    files["_meta.yaml"]["sections"]["conditional"] = {"body": {"skip_if": "short"}}

    merged = resolve_basic(templates_dir, files, options={"short": True})

    assert [s.id for s in merged.sections] == ["intro"]
    assert merged.skipped_sections == ["body"]


def test_condition_selects_variant(templates_dir):
    files = basic_template_files()
    files["sections/body.yaml"]["conditions"] = [
        {"id": "casual", "condition": "tone == 'casual'", "template": "casual"}
    ]
    files["sections/body.yaml"]["templates"]["casual"] = "Casual body"

    casual = resolve_basic(templates_dir, files, options={"tone": "casual"})
    formal = TemplateResolver(templates_dir).resolve("basic", {"tone": "formal"})

    assert casual.sections[1].variant == "casual"
    assert formal.sections[1].variant == "default"


def test_condition_with_unknown_variant(templates_dir):
    files = basic_template_files()
    files["sections/body.yaml"]["conditions"] = [{"id": "x", "condition": "true", "template": "missing"}]

    with pytest.raises(TemplateIntegrityError, match="unknown template 'missing'"):
        resolve_basic(templates_dir, files)


def test_no_variant_for_required_section(templates_dir):
    files = basic_template_files()
    files["sections/body.yaml"]["conditions"] = [{"id": "x", "condition": "flag", "template": "special"}]
    files["sections/body.yaml"]["templates"] = {"special": "Special"}

    with pytest.raises(TemplateIntegrityError, match="no matching condition"):
        resolve_basic(templates_dir, files)


def test_no_variant_for_skippable_section(templates_dir):
    files = basic_template_files()
    files["sections/body.yaml"]["conditions"] = [{"id": "x", "condition": "flag", "template": "special"}]
    files["sections/body.yaml"]["templates"] = {"special": "Special"}
    files["sections/body.yaml"]["skippable"] = True

    merged = resolve_basic(templates_dir, files)

    assert merged.skipped_sections == ["body"]


def test_render_fills_placeholders(templates_dir):
    merged = resolve_basic(templates_dir)

    text = render(merged, {"work_title": "呪術廻戦", "end_date": "2026-01-31"})

    assert text == "Intro 呪術廻戦\n\nBody until 2026-01-31"


def test_render_missing_required(templates_dir):
    merged = resolve_basic(templates_dir)

    with pytest.raises(TemplateRenderError) as exc_info:
        render(merged, {"end_date": "2026-01-31"})

    assert exc_info.value.missing == ["work_title"]


def test_render_missing_optional_is_blank(templates_dir):
    merged = resolve_basic(templates_dir)

    assert render(merged, {"work_title": "呪術廻戦"}) == "Intro 呪術廻戦\n\nBody until"


def test_render_text_lists_and_dotted_names():
    text, missing = render_text("{{ tags }} / {{facts.venue}}", {"tags": ["a", "b"], "facts": {"venue": "池袋"}})

    assert text == "a、b / 池袋"
    assert missing == []


def test_debug_boundaries(templates_dir):
    merged = resolve_basic(templates_dir, debug=True)

    assembled = merged.assemble_sections()

    assert "<!-- ===== section: intro (default) ===== -->" in assembled
    assert assembled.index("section: intro") < assembled.index("section: body")


def test_repository_template_defaults():
    merged = TemplateResolver(REPO_TEMPLATES_DIR).resolve("collabo-cafe")

    assert merged.step_names == ["extraction", "generation"]
    assert merged.skipped_steps == ["summary"]
    assert [s.id for s in merged.sections] == ["lead", "overview", "goods", "closing"]
    assert merged.skipped_sections == ["menu"]
    assert "animate-cafe.com" in merged.allowed_domains()


def test_repository_template_with_options():
    options = {"include_summary": True, "event_type": "コラボカフェ", "end_date": "2026-01-31", "skip_goods": True}

    merged = TemplateResolver(REPO_TEMPLATES_DIR).resolve("collabo-cafe", options, debug=True)
    variants = {s.id: s.variant for s in merged.sections}

    assert merged.step_names == ["extraction", "generation", "summary"]
    assert variants == {"lead": "default", "overview": "with_period", "menu": "cafe_menu", "closing": "default"}
    assert merged.skipped_sections == ["goods"]
    assert "<!-- closing -->" in merged.assemble_sections()


def test_resolution_is_idempotent(templates_dir):
    resolve_basic(templates_dir)
    resolver = TemplateResolver(templates_dir)

    first = resolver.resolve("basic", {"tone": "casual"})
    second = resolver.resolve("basic", {"tone": "casual"})

    assert first == second
    assert first is not second


def test_custom_boundary_with_literal_braces(templates_dir):
    files = basic_template_files()
    files["sections/body.yaml"]["_boundary"] = "<!-- {id}/{variant} {\"debug\": true} -->"

    merged = resolve_basic(templates_dir, files, debug=True)

    assert '<!-- body/default {"debug": true} -->' in merged.assemble_sections()
