"""
Modular Template Resolver

將三層 template (meta/pipeline、shared、sections) 合併為一個 MergedTemplate。
任何不一致都以 TemplateIntegrityError 回報，不回傳部分結果。

Layout:
    <templates_dir>/<template_id>/_meta.yaml
    <templates_dir>/<template_id>/shared/*.yaml
    <templates_dir>/<template_id>/pipeline/<step>.yaml
    <templates_dir>/<template_id>/sections/<section>.yaml
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar, Union
import logging
import re

import yaml
from pydantic import BaseModel, ValidationError

from feed_writer.errors import TemplateIntegrityError, TemplateNotFoundError, TemplateRenderError
from feed_writer.templating.conditions import compile_condition, evaluate_condition, resolve_name
from feed_writer.templating.schema import (
    ConstraintDefinition,
    MergedTemplate,
    MetaLayer,
    PipelineStepLayer,
    PlaceholderDefinition,
    ResolvedSection,
    ResolvedStep,
    SectionLayer,
    SectionsReference,
    SharedLayer,
)

logger = logging.getLogger(__name__)

META_FILE = "_meta.yaml"
DEFAULT_VARIANT = "default"

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\s*\}\}")

M = TypeVar("M", bound=BaseModel)


def _yaml_name(name: str) -> str:
    return name if name.endswith((".yaml", ".yml")) else f"{name}.yaml"


def _context(options: Any) -> Dict[str, Any]:
    if options is None:
        return {}
    if hasattr(options, "as_context"):
        return options.as_context()
    if isinstance(options, BaseModel):
        return options.model_dump()
    return dict(options)


class TemplateResolver:
    """Template directory 的讀取與合併"""

    def __init__(self, templates_dir: Union[str, Path] = "templates"):
        """
        初始化 TemplateResolver

        Args:
            templates_dir: Template 根目錄
        """
        self.templates_dir = Path(templates_dir)

    def list_templates(self) -> List[str]:
        """列出含有 _meta.yaml 的 template id"""
        if not self.templates_dir.is_dir():
            return []
        return sorted(p.parent.name for p in self.templates_dir.glob(f"*/{META_FILE}"))

    def _template_root(self, template_id: str) -> Path:
        root = self.templates_dir / template_id
        if not (root / META_FILE).is_file():
            raise TemplateNotFoundError(template_id, str(root / META_FILE))
        return root

    def _load(self, path: Path, model: Type[M], template_id: str) -> M:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise TemplateIntegrityError(f"Invalid YAML in {path.name}: {e}", template_id) from e

        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TemplateIntegrityError(
                f"Invalid structure in {path.name}: {e.error_count()} error(s): {e}", template_id
            ) from e

    def load_meta(self, template_id: str) -> MetaLayer:
        """讀取 meta layer"""
        root = self._template_root(template_id)
        meta = self._load(root / META_FILE, MetaLayer, template_id)
        if meta.meta.id != template_id:
            logger.warning(f"Template directory {template_id} declares id {meta.meta.id}")
        return meta

    def resolve(self, template_id: str, options: Any = None, debug: bool = False) -> MergedTemplate:
        """
        合併 template

        Args:
            template_id: Template ID
            options: 生成選項 (條件式的評估 context)
            debug: 在 section 之間插入 boundary marker

        Returns:
            MergedTemplate

        Raises:
            TemplateNotFoundError: 未知的 template id
            TemplateIntegrityError: shared 缺漏、名稱衝突、未知 section、循環依賴、順序不明確
        """
        root = self._template_root(template_id)
        meta = self.load_meta(template_id)
        context = _context(options)

        required, optional, constraints = self._merge_shared(root, meta, template_id)

        step_layers = self._load_steps(root, meta, template_id)
        execution_order = self._execution_order(meta, template_id)
        steps, skipped_steps = self._select_steps(meta, step_layers, execution_order, context)

        sections: List[ResolvedSection] = []
        skipped_sections: List[str] = []
        section_step = next((s for s in steps if s.uses_sections), None)
        if section_step is not None:
            reference = step_layers[section_step.name].sections_reference
            sections, skipped_sections = self._resolve_sections(
                root, meta, reference, context, template_id
            )

        merged = MergedTemplate(
            template_id=template_id,
            meta=meta.meta,
            steps=steps,
            skipped_steps=skipped_steps,
            required_placeholders=required,
            optional_placeholders=optional,
            constraints=constraints,
            sections=sections,
            skipped_sections=skipped_sections,
            debug=debug,
        )

        logger.info(f"✓ Resolved template {template_id} v{meta.meta.version}: " +
                    f"{len(steps)} steps ({len(skipped_steps)} skipped), " +
                    f"{len(sections)} sections ({len(skipped_sections)} skipped)")
        return merged

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _merge_shared(
        self,
        root: Path,
        meta: MetaLayer,
        template_id: str
    ) -> Tuple[Dict[str, PlaceholderDefinition], Dict[str, PlaceholderDefinition], Dict[str, ConstraintDefinition]]:
        required: Dict[str, PlaceholderDefinition] = {}
        optional: Dict[str, PlaceholderDefinition] = {}
        constraints: Dict[str, ConstraintDefinition] = {}
        origin: Dict[str, str] = {}

        for name in meta.shared:
            path = root / "shared" / _yaml_name(name)
            if not path.is_file():
                raise TemplateIntegrityError(f"Missing shared file: shared/{_yaml_name(name)}", template_id)

            layer = self._load(path, SharedLayer, template_id)

            for target, definitions in ((required, layer.placeholders.required),
                                        (optional, layer.placeholders.optional)):
                for definition in definitions:
                    key = f"placeholder:{definition.name}"
                    if key in origin:
                        raise TemplateIntegrityError(
                            f"Placeholder '{definition.name}' defined in both {origin[key]} and {path.name}",
                            template_id
                        )
                    origin[key] = path.name
                    target[definition.name] = definition

            for constraint_name, constraint in layer.constraints.items():
                key = f"constraint:{constraint_name}"
                if key in origin:
                    raise TemplateIntegrityError(
                        f"Constraint '{constraint_name}' defined in both {origin[key]} and {path.name}",
                        template_id
                    )
                origin[key] = path.name
                constraints[constraint_name] = constraint

        return required, optional, constraints

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _load_steps(self, root: Path, meta: MetaLayer, template_id: str) -> Dict[str, PipelineStepLayer]:
        order = meta.pipeline.order
        duplicates = sorted({s for s in order if order.count(s) > 1})
        if duplicates:
            raise TemplateIntegrityError(f"Duplicate pipeline steps: {', '.join(duplicates)}", template_id)

        for step, dependency in meta.pipeline.dependencies.items():
            if step not in order:
                raise TemplateIntegrityError(f"Dependencies declared for unknown step '{step}'", template_id)
            for required in dependency.requires:
                if required not in order:
                    raise TemplateIntegrityError(
                        f"Step '{step}' requires unknown step '{required}'", template_id
                    )
            if dependency.condition:
                compile_condition(dependency.condition)

        layers = {}
        for step in order:
            path = root / "pipeline" / _yaml_name(step)
            if not path.is_file():
                raise TemplateIntegrityError(f"Missing pipeline file: pipeline/{_yaml_name(step)}", template_id)
            layers[step] = self._load(path, PipelineStepLayer, template_id)
        return layers

    @staticmethod
    def _execution_order(meta: MetaLayer, template_id: str) -> List[str]:
        """依賴優先的 topological order；沒有依賴關係時保持宣告順序"""
        order = meta.pipeline.order
        dependencies = meta.pipeline.dependencies
        requires = {s: set(dependencies[s].requires) if s in dependencies else set() for s in order}

        resolved: List[str] = []
        remaining = list(order)
        while remaining:
            ready = next((s for s in remaining if requires[s] <= set(resolved)), None)
            if ready is None:
                raise TemplateIntegrityError(
                    f"Cyclic pipeline dependency among: {', '.join(remaining)}", template_id
                )
            resolved.append(ready)
            remaining.remove(ready)
        return resolved

    @staticmethod
    def _select_steps(
        meta: MetaLayer,
        layers: Dict[str, PipelineStepLayer],
        execution_order: List[str],
        context: Mapping[str, Any]
    ) -> Tuple[List[ResolvedStep], List[str]]:
        steps: List[ResolvedStep] = []
        skipped: List[str] = []

        for name in execution_order:
            dependency = meta.pipeline.dependencies.get(name)
            requires = list(dependency.requires) if dependency else []
            condition = dependency.condition if dependency else None

            blocked = [r for r in requires if r in skipped]
            if blocked:
                logger.debug(f"Skipping step {name}: requires skipped step(s) {blocked}")
                skipped.append(name)
                continue
            if not evaluate_condition(condition, context):
                logger.debug(f"Skipping step {name}: condition {condition!r} is false")
                skipped.append(name)
                continue

            layer = layers[name]
            steps.append(ResolvedStep(
                name=name,
                requires=requires,
                prompts=dict(layer.prompts),
                input=layer.input,
                output=layer.output,
                logic=dict(layer.logic),
                uses_sections=layer.sections_reference is not None,
            ))

        return steps, skipped

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _section_names(
        self,
        section_dir: Path,
        meta: MetaLayer,
        reference: SectionsReference,
        template_id: str
    ) -> List[str]:
        if reference.assembly_order == "explicit" and reference.order:
            names = list(reference.order)
        elif meta.sections.order:
            names = list(meta.sections.order)
        elif section_dir.is_dir():
            names = sorted(p.stem for p in section_dir.glob("*.yaml"))
        else:
            names = []

        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise TemplateIntegrityError(f"Duplicate section references: {', '.join(duplicates)}", template_id)
        return names

    def _resolve_sections(
        self,
        root: Path,
        meta: MetaLayer,
        reference: SectionsReference,
        context: Mapping[str, Any],
        template_id: str
    ) -> Tuple[List[ResolvedSection], List[str]]:
        section_dir = root / reference.source
        names = self._section_names(section_dir, meta, reference, template_id)

        for name, skip in meta.sections.conditional.items():
            if name not in names:
                raise TemplateIntegrityError(f"Skip condition for unknown section '{name}'", template_id)
            compile_condition(skip.skip_if)

        layers: Dict[str, SectionLayer] = {}
        for name in names:
            path = section_dir / _yaml_name(name)
            if not path.is_file():
                raise TemplateIntegrityError(
                    f"Section '{name}' has no matching file {reference.source}/{_yaml_name(name)}", template_id
                )
            layer = self._load(path, SectionLayer, template_id)
            self._check_section(name, layer, template_id)
            layers[name] = layer

        if reference.assembly_order == "explicit":
            ordered = names
        else:
            by_order: Dict[int, str] = {}
            for name in names:
                position = layers[name].section.order
                if position in by_order:
                    raise TemplateIntegrityError(
                        f"Ambiguous section order {position}: '{by_order[position]}' and '{name}'", template_id
                    )
                by_order[position] = name
            ordered = [by_order[k] for k in sorted(by_order)]

        sections: List[ResolvedSection] = []
        skipped: List[str] = []
        for name in ordered:
            layer = layers[name]

            skip = meta.sections.conditional.get(name)
            if skip and evaluate_condition(skip.skip_if, context):
                logger.debug(f"Skipping section {name}: skip_if {skip.skip_if!r}")
                skipped.append(name)
                continue

            variant = self._select_variant(layer, context)
            if variant is None:
                if not layer.skippable:
                    raise TemplateIntegrityError(
                        f"Section '{name}' has no matching condition and no default template", template_id
                    )
                logger.debug(f"Skipping section {name}: no matching variant")
                skipped.append(name)
                continue

            sections.append(ResolvedSection(
                id=name,
                name=layer.section.name,
                order=layer.section.order,
                variant=variant,
                text=layer.templates[variant],
                required_placeholders=list(layer.required_placeholders),
                optional_placeholders=list(layer.optional_placeholders),
                boundary=layer.boundary,
            ))

        return sections, skipped

    @staticmethod
    def _check_section(name: str, layer: SectionLayer, template_id: str) -> None:
        for condition in layer.conditions:
            compile_condition(condition.condition)
            if condition.template not in layer.templates:
                raise TemplateIntegrityError(
                    f"Section '{name}' condition '{condition.id}' refers to unknown template '{condition.template}'",
                    template_id
                )
        if not layer.templates and not layer.skippable:
            raise TemplateIntegrityError(f"Section '{name}' defines no templates", template_id)

    @staticmethod
    def _select_variant(layer: SectionLayer, context: Mapping[str, Any]) -> Optional[str]:
        """第一個成立的 condition；皆不成立時為 default (若有)"""
        for condition in layer.conditions:
            if evaluate_condition(condition.condition, context):
                return condition.template
        if DEFAULT_VARIANT in layer.templates:
            return DEFAULT_VARIANT
        return None


# ----------------------------------------------------------------------
# Placeholder rendering
# ----------------------------------------------------------------------

def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "、".join(str(v) for v in value)
    return str(value)


def render_text(text: str, values: Mapping[str, Any], required: Iterable[str] = ()) -> Tuple[str, List[str]]:
    """
    替換 {{name}} placeholder

    Args:
        text: 原始文字
        values: placeholder 值 (支援 dotted path)
        required: 必填的 placeholder 名稱

    Returns:
        (render 後文字, 缺少的 required 名稱)
    """
    required = set(required)
    missing: List[str] = []

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        value = resolve_name(values, name)
        if value is None or value == "" or value == []:
            if name in required and name not in missing:
                missing.append(name)
            return ""
        return _format_value(value)

    return _PLACEHOLDER.sub(substitute, text), missing


def render(merged: MergedTemplate, values: Mapping[str, Any]) -> str:
    """
    Render 所有 section 並依順序組合

    Args:
        merged: MergedTemplate
        values: placeholder 值

    Returns:
        組合後的本文 template

    Raises:
        TemplateRenderError: 缺少 required placeholder
    """
    global_required = set(merged.required_placeholders)
    rendered: Dict[str, str] = {}
    missing: List[str] = []

    for section in merged.sections:
        text, section_missing = render_text(
            section.text, values, global_required | set(section.required_placeholders)
        )
        rendered[section.id] = text
        missing.extend(m for m in section_missing if m not in missing)

    if missing:
        raise TemplateRenderError(
            f"Missing required placeholders for {merged.template_id}: {', '.join(missing)}", missing
        )

    return merged.assemble_sections(rendered)
