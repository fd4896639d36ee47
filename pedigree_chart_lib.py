"""
pedigree_chart_lib.py

Deterministic renderer: genealogy JSON -> ascending (pedigree) chart SVG.

The chart is a perfect binary tree of text boxes: the root individual sits on
the bottom row, each generation above it holds 2^depth slots, and every parent
pair occupies the two slots directly above their child. Missing ancestors are
left as empty slots so the grid never shifts.

Pipeline:
- Schemas: pydantic models for the genealogy data and the chart config.
- Layer resolution: per-depth overrides cascade onto deeper generations by
  deep merge (lists replace, mappings merge, scalars replace).
- Layout: breadth-first ancestor traversal bounded by `generations.ascending`
  (depths 0..N, so ascending=N draws up to N+1 rows, the root row included).
- Rendering: flat SVG (rect + text elements, no groups) on an SvgSurface.
- Text fitting: font sizes shrink by bounded bisection against real font
  metrics (Pillow) so that each text fits its box.

Data (JSON keys):
- rootIndividualId: str
- individuals: {id: {surname, givenName, birthEvent, deathEvent}}
- families: {id: {husbandIndividualId, wifeIndividualId, unionEvent}}
- ascendingRelation: {individualId: familyId}  (family in which the individual is a child)

Config (JSON keys):
- generations.ascending, margin.{sides,top,bottom}, font.{family,path}, style
- layers.<depth>.{texts, textSize, textLength, orientation, spacing,
  padding.{sides,top,bottom,textSpacing}, unions.enabled, box.{fill,stroke,strokeWidth}}

Not supported: descendant charts, vertical text orientation (rejected), cyclic ancestry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union
from xml.etree import ElementTree as ET

from PIL import ImageFont
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SVG_NS = "http://www.w3.org/2000/svg"
ORIENTATION_HORIZONTAL = "horizontal"
ORIENTATION_VERTICAL = "vertical"
DEFAULT_FONT_FAMILY = "DejaVu Sans, sans-serif"
DEFAULT_FONT_FILE = "DejaVuSans.ttf"
FIT_ITERATIONS = 6

MeasureFn = Callable[[str, float], float]


# ---------- Errors ----------
class ChartError(Exception):
    pass


class ChartValidationError(ChartError):
    """Input data or config failed validation; `path` names the offending field."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.message = message
        self.path = path

    @classmethod
    def from_pydantic(cls, exc: ValidationError, prefix: Tuple[Any, ...] = ()) -> "ChartValidationError":
        first = exc.errors()[0]
        path = ".".join(str(part) for part in (*prefix, *first["loc"]))
        return cls(first["msg"], path)


class UnsupportedOrientationError(ChartError):
    def __init__(self, orientation: str, depth: Optional[int] = None) -> None:
        where = f" at depth {depth}" if depth is not None else ""
        super().__init__(f"Unsupported orientation {orientation!r}{where}")
        self.orientation = orientation
        self.depth = depth


class SurfaceError(ChartError):
    pass


# ---------- Data ----------
class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Event(_Model):
    date: Optional[str] = None
    place: Optional[str] = None


class Individual(_Model):
    id: str = ""
    surname: str = ""
    given_name: str = ""
    birth_event: Optional[Event] = None
    death_event: Optional[Event] = None

    def field_value(self, name: str) -> str:
        # birth_date, death_place, ... read through the event records
        event_kind, _, attr = name.partition("_")
        if event_kind in ("birth", "death") and attr in ("date", "place"):
            event = getattr(self, f"{event_kind}_event")
            return (getattr(event, attr) if event else None) or ""
        return getattr(self, name) or ""


class Family(_Model):
    id: str = ""
    husband_individual_id: Optional[str] = None
    wife_individual_id: Optional[str] = None
    union_event: Optional[Event] = None


class GenealogyGraph(_Model):
    root_individual_id: Optional[str] = None
    individuals: Dict[str, Individual]
    families: Dict[str, Family] = Field(default_factory=dict)
    ascending_relation: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _assign_ids(self) -> "GenealogyGraph":
        # Records are keyed by id; the key is authoritative.
        for key, individual in self.individuals.items():
            individual.id = key
        for key, family in self.families.items():
            family.id = key
        return self

    def parents_of(self, individual_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        if individual_id is None:
            return (None, None)
        family_id = self.ascending_relation.get(individual_id)
        family = self.families.get(family_id) if family_id is not None else None
        if family is None:
            return (None, None)
        return (family.husband_individual_id, family.wife_individual_id)


# ---------- Config ----------
FieldName = Literal["id", "surname", "given_name", "birth_date", "birth_place", "death_date", "death_place"]
Orientation = Literal["horizontal", "vertical"]


class FieldReference(BaseModel):
    kind: Literal["field"] = "field"
    name: FieldName

    def text_for(self, individual: Individual) -> str:
        return individual.field_value(self.name)


class Deriver(BaseModel):
    kind: Literal["derived"] = "derived"
    derive: Callable[[Individual], str]

    def text_for(self, individual: Individual) -> str:
        return self.derive(individual) or ""


TextRow = Union[FieldReference, Deriver]


def _tag_text_row(value: Any) -> Any:
    if isinstance(value, (FieldReference, Deriver)):
        return value
    if isinstance(value, str):
        return {"kind": "field", "name": value}
    if callable(value):
        return {"kind": "derived", "derive": value}
    if isinstance(value, Mapping) and "value" in value:
        # {"value": "surname"} / {"value": fn}
        return _tag_text_row(value["value"])
    return value


def _tag_text_rows(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        if not value:
            raise ValueError("at least one text row is required")
        return [_tag_text_row(item) for item in value]
    return value


TextRows = Annotated[List[TextRow], BeforeValidator(_tag_text_rows)]


def _default_texts() -> List[TextRow]:
    return [FieldReference(name="surname"), FieldReference(name="given_name")]


class Padding(_Model):
    sides: PositiveFloat = 10
    top: PositiveFloat = 10
    bottom: PositiveFloat = 10
    text_spacing: PositiveFloat = 10


class Unions(_Model):
    enabled: bool = True


class BoxStyle(_Model):
    fill: str = "none"
    stroke: str = "black"
    stroke_width: NonNegativeFloat = 1


class LayerConfig(_Model):
    texts: TextRows = Field(default_factory=_default_texts)
    text_size: PositiveFloat = 10
    text_length: PositiveFloat = 50
    orientation: Orientation = ORIENTATION_HORIZONTAL
    padding: Padding = Field(default_factory=Padding)
    spacing: NonNegativeFloat = 0  # gap between this row and the row below it
    unions: Unions = Field(default_factory=Unions)
    box: BoxStyle = Field(default_factory=BoxStyle)


# Partial counterparts of the layer sections: only explicitly given fields are applied.
class PaddingPatch(_Model):
    sides: Optional[PositiveFloat] = None
    top: Optional[PositiveFloat] = None
    bottom: Optional[PositiveFloat] = None
    text_spacing: Optional[PositiveFloat] = None


class UnionsPatch(_Model):
    enabled: Optional[bool] = None


class BoxStylePatch(_Model):
    fill: Optional[str] = None
    stroke: Optional[str] = None
    stroke_width: Optional[NonNegativeFloat] = None


class LayerPatch(_Model):
    texts: Optional[TextRows] = None
    text_size: Optional[PositiveFloat] = None
    text_length: Optional[PositiveFloat] = None
    orientation: Optional[Orientation] = None
    padding: Optional[PaddingPatch] = None
    spacing: Optional[NonNegativeFloat] = None
    unions: Optional[UnionsPatch] = None
    box: Optional[BoxStylePatch] = None


class Generations(_Model):
    ascending: PositiveInt = 5


class Margin(_Model):
    sides: PositiveFloat = 25
    top: PositiveFloat = 25
    bottom: PositiveFloat = 25


class Font(_Model):
    family: str = DEFAULT_FONT_FAMILY
    path: Optional[str] = None


class ChartConfig(_Model):
    generations: Generations = Field(default_factory=Generations)
    layers: Dict[NonNegativeInt, LayerPatch] = Field(default_factory=dict)
    margin: Margin = Field(default_factory=Margin)
    font: Font = Field(default_factory=Font)
    style: Dict[str, Any] = Field(default_factory=dict)


def load_graph(data: Union[GenealogyGraph, Mapping[str, Any]]) -> GenealogyGraph:
    if isinstance(data, GenealogyGraph):
        return data
    try:
        return GenealogyGraph.model_validate(data)
    except ValidationError as exc:
        raise ChartValidationError.from_pydantic(exc) from exc


def load_config(config: Union[ChartConfig, Mapping[str, Any], None] = None) -> ChartConfig:
    if isinstance(config, ChartConfig):
        return config
    try:
        return ChartConfig.model_validate(config or {})
    except ValidationError as exc:
        raise ChartValidationError.from_pydantic(exc) from exc


# ---------- Layer resolution ----------
def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge `override` onto `base` without mutating either.

    Mappings merge key by key, lists replace the base value wholesale, and any
    other value replaces outright. Keys missing from `override` are kept.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(value, Mapping):
            merged[key] = deep_merge(current if isinstance(current, Mapping) else {}, value)
        elif isinstance(value, list):
            merged[key] = list(value)
        else:
            merged[key] = value
    return merged


def _as_tree(model: BaseModel, *, only_set: bool = False) -> Dict[str, Any]:
    # Nested config sections become dicts; lists (text rows) are kept as-is.
    names = model.model_fields_set if only_set else type(model).model_fields
    tree: Dict[str, Any] = {}
    for name in names:
        value = getattr(model, name)
        if isinstance(value, BaseModel):
            value = _as_tree(value, only_set=only_set)
        tree[name] = value
    return tree


class LayerResolver:
    """Effective layer config per depth: layer(d) = deep_merge(layer(d-1), patch[d])."""

    def __init__(self, layers: Optional[Mapping[int, LayerPatch]] = None) -> None:
        self._patches: Dict[int, Dict[str, Any]] = {
            depth: _as_tree(patch, only_set=True) for depth, patch in (layers or {}).items()
        }
        self._resolved: List[LayerConfig] = []

    def layer(self, depth: int) -> LayerConfig:
        if depth < 0:
            raise ValueError(f"depth must be non-negative, got {depth}")
        while len(self._resolved) <= depth:
            current = len(self._resolved)
            base = _as_tree(self._resolved[-1] if self._resolved else LayerConfig())
            merged = deep_merge(base, self._patches.get(current, {}))
            try:
                self._resolved.append(LayerConfig.model_validate(merged))
            except ValidationError as exc:
                raise ChartValidationError.from_pydantic(exc, prefix=("layers", current)) from exc
        return self._resolved[depth]

    __call__ = layer


# ---------- Layout ----------
@dataclass
class BoxPlan:
    depth: int
    layer: LayerConfig
    width: float
    height: float
    slots: Tuple[Optional[str], ...] = ()


@dataclass
class LayoutResult:
    depth: int
    width: float
    height: float
    boxes: List[BoxPlan] = field(default_factory=list)


def compute_box_dimensions(layer: LayerConfig) -> Tuple[float, float]:
    if layer.orientation != ORIENTATION_HORIZONTAL:
        raise UnsupportedOrientationError(layer.orientation)
    padding = layer.padding
    rows = len(layer.texts)
    width = 2 * padding.sides + layer.text_length
    height = padding.top + padding.bottom + rows * layer.text_size + (rows - 1) * padding.text_spacing
    return (width, height)


def _next_frontier(graph: GenealogyGraph, frontier: List[Optional[str]]) -> List[Optional[str]]:
    # Husband/wife take the two slots directly above their child.
    out: List[Optional[str]] = []
    for individual_id in frontier:
        out.extend(graph.parents_of(individual_id))
    return out


def plan_ascending(
    graph: GenealogyGraph,
    layer_for: Callable[[int], LayerConfig],
    max_depth: int,
) -> LayoutResult:
    # Tree ancestry assumed; an ancestor reachable twice gets one slot per path.
    frontier: List[Optional[str]] = [graph.root_individual_id]
    boxes: List[BoxPlan] = []
    depth = 0
    while True:
        slots = tuple(iid if iid is not None and iid in graph.individuals else None for iid in frontier)
        occupied = sum(1 for iid in slots if iid is not None)
        if not occupied:
            break
        layer = layer_for(depth)
        width, height = compute_box_dimensions(layer)
        boxes.append(BoxPlan(depth=depth, layer=layer, width=width, height=height, slots=slots))
        logger.debug("depth %d: %d/%d slots occupied, box %sx%s", depth, occupied, len(slots), width, height)
        if depth >= max_depth:
            break
        frontier = _next_frontier(graph, list(slots))
        depth += 1

    if not boxes:
        logger.debug("root individual %r not found, empty chart", graph.root_individual_id)
        return LayoutResult(depth=0, width=0.0, height=0.0)

    content_width = max((1 << box.depth) * box.width for box in boxes)
    content_height = sum(box.height for box in boxes) + sum(box.layer.spacing for box in boxes[1:])
    return LayoutResult(depth=boxes[-1].depth, width=content_width, height=content_height, boxes=boxes)


# ---------- Surface ----------
class SvgSurface:
    """Flat SVG scene. Primitives are only ever appended; `measure` makes it live for text fitting."""

    def __init__(self, measure: Optional[MeasureFn] = None) -> None:
        self.root = ET.Element("svg", {"xmlns": SVG_NS, "version": "1.1"})
        self.measure = measure

    @property
    def measurable(self) -> bool:
        return self.measure is not None

    def configure(self, width: float, height: float, style: Optional[Mapping[str, Any]] = None) -> None:
        self.root.set("width", str(width))
        self.root.set("height", str(height))
        self.root.set("viewBox", f"0 0 {width} {height}")
        for key, value in (style or {}).items():
            self.root.set(str(key), str(value))

    def add_rect(self, x: float, y: float, width: float, height: float, attributes: Optional[Dict[str, str]] = None) -> ET.Element:
        attrs = {"x": str(x), "y": str(y), "width": str(width), "height": str(height)}
        attrs.update(attributes or {})
        return ET.SubElement(self.root, "rect", attrs)

    def add_text(self, x: float, y: float, text: str, font_size: float, attributes: Optional[Dict[str, str]] = None) -> ET.Element:
        attrs = {"x": str(x), "y": str(y), "font-size": str(font_size)}
        attrs.update(attributes or {})
        t = ET.SubElement(self.root, "text", attrs)
        t.text = text
        return t

    def elements(self, tag: Optional[str] = None) -> List[ET.Element]:
        return [el for el in self.root if tag is None or el.tag == tag]

    def contains(self, element: ET.Element) -> bool:
        return any(child is element for child in self.root)

    def measure_text(self, element: ET.Element) -> float:
        if self.measure is None:
            raise SurfaceError("surface has no text measurement; attach a measurer before fitting text")
        return self.measure(element.text or "", float(element.get("font-size", "0")))

    def set_font_size(self, element: ET.Element, size: float) -> None:
        element.set("font-size", str(size))

    def replace_with(self, other: "SvgSurface") -> None:
        self.root.attrib.clear()
        self.root.attrib.update(other.root.attrib)
        self.root[:] = list(other.root)

    def tostring(self) -> str:
        return ET.tostring(self.root, encoding="unicode")

    def save(self, filename: str) -> str:
        Path(filename).write_text(self.tostring(), encoding="utf-8")
        return filename


class PillowTextMeasurer:
    """Rendered text width from real font metrics (Pillow / FreeType)."""

    def __init__(self, font_path: Optional[str] = None) -> None:
        self.font_path = font_path
        self._fonts: Dict[float, ImageFont.FreeTypeFont] = {}

    def font(self, size: float) -> ImageFont.FreeTypeFont:
        if size not in self._fonts:
            self._fonts[size] = self._load(size)
        return self._fonts[size]

    def _load(self, size: float) -> ImageFont.FreeTypeFont:
        candidates = [self.font_path] if self.font_path else []
        candidates.append(DEFAULT_FONT_FILE)
        for candidate in candidates:
            try:
                return ImageFont.truetype(candidate, size)
            except OSError:
                if candidate == self.font_path:
                    logger.warning("cannot load font %s, falling back", candidate)
        # Pillow's bundled scalable font
        return ImageFont.load_default(size)

    def measure(self, text: str, font_size: float) -> float:
        if not text or font_size <= 0:
            return 0.0
        return float(self.font(font_size).getlength(text))

    __call__ = measure


# ---------- Rendering ----------
@dataclass
class PlacedText:
    element: ET.Element
    max_font_size: float
    target_width: float


def render_ascending(
    surface: SvgSurface,
    layout: LayoutResult,
    graph: GenealogyGraph,
    config: ChartConfig,
) -> List[PlacedText]:
    margin = config.margin
    canvas_width = layout.width + 2 * margin.sides
    canvas_height = layout.height + margin.top + margin.bottom
    surface.configure(canvas_width, canvas_height, config.style)

    placed: List[PlacedText] = []
    # Generation 0 is the bottom row; each generation stacks on top of the previous one.
    y_bottom = canvas_height - margin.bottom
    for plan in layout.boxes:
        if plan.depth > 0:
            y_bottom -= plan.layer.spacing
        y = y_bottom - plan.height
        y_bottom = y

        layer = plan.layer
        box_width = layout.width / (1 << plan.depth)
        target_width = box_width - 2 * layer.padding.sides
        for j, individual_id in enumerate(plan.slots):
            if individual_id is None:
                continue
            individual = graph.individuals[individual_id]
            x = margin.sides + j * box_width
            surface.add_rect(
                x,
                y,
                box_width,
                plan.height,
                {
                    "fill": layer.box.fill,
                    "stroke": layer.box.stroke,
                    "stroke-width": str(layer.box.stroke_width),
                },
            )
            for k, row in enumerate(layer.texts):
                text_y = y + layer.padding.top + k * (layer.text_size + layer.padding.text_spacing) + layer.text_size / 2
                t = surface.add_text(
                    x + box_width / 2,
                    text_y,
                    row.text_for(individual),
                    layer.text_size,
                    {
                        "text-anchor": "middle",
                        "dominant-baseline": "middle",
                        "font-family": config.font.family,
                    },
                )
                placed.append(PlacedText(element=t, max_font_size=layer.text_size, target_width=target_width))
    return placed


# ---------- Text fitting ----------
def fit_text(surface: SvgSurface, element: ET.Element, max_font_size: float, target_width: float) -> float:
    if not surface.contains(element):
        raise SurfaceError("text element is not attached to this surface")
    if surface.measure_text(element) <= target_width:
        return float(element.get("font-size", "0"))

    lower, upper = 0.0, float(max_font_size)
    for _ in range(FIT_ITERATIONS):
        mid = (lower + upper) / 2
        surface.set_font_size(element, mid)
        if surface.measure_text(element) <= target_width:
            lower = mid
        else:
            upper = mid
    # Last size known to fit.
    surface.set_font_size(element, lower)
    logger.debug("fitted %r to font-size %s (max %s, width %s)", element.text, lower, max_font_size, target_width)
    return lower


def fit_texts(surface: SvgSurface, placed: List[PlacedText]) -> None:
    for item in placed:
        fit_text(surface, item.element, item.max_font_size, item.target_width)


# ---------- Entry points ----------
def draw_chart(
    data: Union[GenealogyGraph, Mapping[str, Any]],
    config: Union[ChartConfig, Mapping[str, Any], None] = None,
    surface: Optional[SvgSurface] = None,
    *,
    fit: bool = True,
) -> SvgSurface:
    """Validate, lay out, render and fit an ascending chart.

    The scene is built on a fresh surface first; a caller-supplied `surface`
    is only replaced once everything succeeded.
    """
    graph = load_graph(data)
    chart_config = load_config(config)
    resolver = LayerResolver(chart_config.layers)
    max_depth = chart_config.generations.ascending

    # Every configured depth is checked, drawable or not.
    for depth in range(max(max_depth, max(chart_config.layers, default=0)) + 1):
        layer = resolver.layer(depth)
        if layer.orientation != ORIENTATION_HORIZONTAL:
            raise UnsupportedOrientationError(layer.orientation, depth)

    layout = plan_ascending(graph, resolver.layer, max_depth)

    measure = surface.measure if surface is not None else PillowTextMeasurer(chart_config.font.path)
    scene = SvgSurface(measure=measure)
    placed = render_ascending(scene, layout, graph, chart_config)
    if fit:
        fit_texts(scene, placed)
    logger.info(
        "drew %d generation(s), %d box(es)",
        len(layout.boxes),
        len(scene.elements("rect")),
    )

    if surface is None:
        return scene
    surface.replace_with(scene)
    return surface


class AscendingChart:
    def __init__(self, measure: Optional[MeasureFn] = None) -> None:
        self.graph: Optional[GenealogyGraph] = None
        self.config = ChartConfig()
        self.measure = measure
        self.fit = True

    def load_from_json(self, data: Mapping[str, Any], config: Optional[Mapping[str, Any]] = None) -> None:
        self.graph = load_graph(data)
        self.config = load_config(config)

    @property
    def layout(self) -> LayoutResult:
        if self.graph is None:
            raise ChartError("no genealogy data loaded; call load_from_json first")
        resolver = LayerResolver(self.config.layers)
        return plan_ascending(self.graph, resolver.layer, self.config.generations.ascending)

    def render(self) -> str:
        if self.graph is None:
            raise ChartError("no genealogy data loaded; call load_from_json first")
        surface = SvgSurface(measure=self.measure or PillowTextMeasurer(self.config.font.path))
        draw_chart(self.graph, self.config, surface, fit=self.fit)
        return surface.tostring()

    def render_and_save(self, filename: str = "pedigree.svg") -> str:
        svg = self.render()
        Path(filename).write_text(svg, encoding="utf-8")
        return filename
