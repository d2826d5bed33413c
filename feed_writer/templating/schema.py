"""
Template layer schemas

三層 template (meta / shared / sections) 與 pipeline step 的 tagged models，
以及 resolver 輸出的 MergedTemplate (read-only)。
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Meta layer (_meta.yaml)
# ---------------------------------------------------------------------------

class TemplateInfo(BaseModel):
    id: str = Field(..., description="Template ID")
    name: str = Field(default="", description="顯示名稱")
    version: str = Field(default="1.0.0", description="Semantic version")
    description: str = Field(default="")
    output_format: Literal["mdx", "html"] = Field(default="mdx")
    event_types: List[str] = Field(default_factory=list)


class PipelineDependency(BaseModel):
    requires: List[str] = Field(default_factory=list, description="依賴的 step")
    condition: Optional[str] = Field(None, description="執行條件 (condition DSL)")


class PipelineConfig(BaseModel):
    order: List[str] = Field(..., description="宣告的執行順序")
    dependencies: Dict[str, PipelineDependency] = Field(default_factory=dict)


class SectionSkipCondition(BaseModel):
    skip_if: str = Field(..., description="成立時省略 section")


class SectionsConfig(BaseModel):
    order: List[str] = Field(default_factory=list, description="Section 組合順序")
    conditional: Dict[str, SectionSkipCondition] = Field(default_factory=dict)


class MetaLayer(BaseModel):
    """_meta.yaml"""
    meta: TemplateInfo
    pipeline: PipelineConfig
    sections: SectionsConfig = Field(default_factory=SectionsConfig)
    shared: List[str] = Field(default_factory=list, description="shared/ 內的檔名")


# ---------------------------------------------------------------------------
# Shared layer (shared/*.yaml)
# ---------------------------------------------------------------------------

class PlaceholderDefinition(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    type: str = Field(default="string")
    description: Optional[str] = None
    format: Optional[str] = None
    example: Optional[Any] = None
    extraction_hint: Optional[str] = None


class PlaceholderGroups(BaseModel):
    required: List[PlaceholderDefinition] = Field(default_factory=list)
    optional: List[PlaceholderDefinition] = Field(default_factory=list)


class LengthBounds(BaseModel):
    min: Optional[int] = None
    max: Optional[int] = None
    recommended: Optional[str] = None


class ConstraintDefinition(BaseModel):
    """長度、格式 pattern、允許的 domain 等限制"""
    model_config = ConfigDict(extra="allow")

    length: Optional[LengthBounds] = None
    format: Optional[str] = None
    pattern: Optional[Dict[str, str]] = None
    allowed_domains: List[str] = Field(default_factory=list)
    rule: Optional[str] = None


class SharedLayer(BaseModel):
    """shared/*.yaml (placeholders 與 constraints 皆可選)"""
    version: str = Field(default="1.0.0")
    placeholders: PlaceholderGroups = Field(default_factory=PlaceholderGroups)
    constraints: Dict[str, ConstraintDefinition] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pipeline steps (pipeline/<step>.yaml)
# ---------------------------------------------------------------------------

class StepInfo(BaseModel):
    id: Optional[str] = None
    name: str = Field(default="")
    version: str = Field(default="1.0.0")
    description: str = Field(default="")


class StepInput(BaseModel):
    required: List[str] = Field(default_factory=list)
    optional: List[str] = Field(default_factory=list)


class StepOutput(BaseModel):
    format: str = Field(default="text")
    description: Optional[str] = None
    schema_: Optional[str] = Field(None, alias="schema")
    structure: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class SectionsReference(BaseModel):
    source: str = Field(default="sections", description="Section 目錄")
    assembly_order: Literal["from_meta", "explicit"] = Field(default="from_meta")
    order: Optional[List[str]] = Field(None, description="explicit 時使用的順序")


class PipelineStepLayer(BaseModel):
    template: StepInfo = Field(default_factory=StepInfo)
    input: StepInput = Field(default_factory=StepInput)
    output: StepOutput = Field(default_factory=StepOutput)
    sections_reference: Optional[SectionsReference] = None
    logic: Dict[str, str] = Field(default_factory=dict)
    prompts: Dict[str, str] = Field(..., description="prompt 名稱 -> 文字")


# ---------------------------------------------------------------------------
# Sections (sections/<section>.yaml)
# ---------------------------------------------------------------------------

class SectionInfo(BaseModel):
    id: str
    name: str = Field(default="")
    version: str = Field(default="1.0.0")
    order: int = Field(..., description="組合順序 (升冪)")


class SectionCondition(BaseModel):
    id: str
    condition: str = Field(..., description="條件式 (condition DSL)")
    template: str = Field(..., description="成立時使用的 variant 名稱")


class SectionLayer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    section: SectionInfo
    required_placeholders: List[str] = Field(default_factory=list)
    optional_placeholders: List[str] = Field(default_factory=list)
    conditions: List[SectionCondition] = Field(default_factory=list)
    templates: Dict[str, str] = Field(default_factory=dict, description="variant 名稱 -> 文字")
    skippable: bool = Field(default=False, description="無符合 variant 且無 default 時省略")
    boundary: Optional[str] = Field(None, alias="_boundary", description="debug 用 boundary marker")


# ---------------------------------------------------------------------------
# Resolved output
# ---------------------------------------------------------------------------

class ResolvedStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    requires: List[str] = Field(default_factory=list)
    prompts: Dict[str, str] = Field(default_factory=dict)
    input: StepInput = Field(default_factory=StepInput)
    output: StepOutput = Field(default_factory=StepOutput)
    logic: Dict[str, str] = Field(default_factory=dict)
    uses_sections: bool = False


class ResolvedSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    order: int
    variant: str = Field(..., description="採用的 variant (default 或 condition 指定)")
    text: str
    required_placeholders: List[str] = Field(default_factory=list)
    optional_placeholders: List[str] = Field(default_factory=list)
    boundary: Optional[str] = None


DEFAULT_BOUNDARY = "<!-- ===== section: {id} ({variant}) ===== -->"


class MergedTemplate(BaseModel):
    """
    生成用的 resolved template

    每次生成時重新建立，建立後不變更。
    """
    model_config = ConfigDict(frozen=True)

    template_id: str
    meta: TemplateInfo
    steps: List[ResolvedStep] = Field(default_factory=list, description="執行順序")
    skipped_steps: List[str] = Field(default_factory=list)
    required_placeholders: Dict[str, PlaceholderDefinition] = Field(default_factory=dict)
    optional_placeholders: Dict[str, PlaceholderDefinition] = Field(default_factory=dict)
    constraints: Dict[str, ConstraintDefinition] = Field(default_factory=dict)
    sections: List[ResolvedSection] = Field(default_factory=list, description="組合順序")
    skipped_sections: List[str] = Field(default_factory=list)
    debug: bool = False

    def step(self, name: str) -> Optional[ResolvedStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]

    def allowed_domains(self) -> List[str]:
        """所有 constraint 的 allowed_domains"""
        domains = []
        for constraint in self.constraints.values():
            domains.extend(d for d in constraint.allowed_domains if d not in domains)
        return domains

    def assemble_sections(self, texts: Optional[Dict[str, str]] = None) -> str:
        """
        依順序串接 section 文字

        debug 模式時在 section 之間插入 boundary marker (不影響生成語意)。

        Args:
            texts: section id -> 已 render 的文字 (None 時使用原始 template 文字)
        """
        parts = []
        for section in self.sections:
            if self.debug:
                marker = section.boundary or DEFAULT_BOUNDARY
                parts.append(marker.replace("{id}", section.id).replace("{variant}", section.variant))
            parts.append((texts or {}).get(section.id, section.text).strip())
        return "\n\n".join(parts)
