"""Static catalog of the monitored (variable, category) series.

Every category is described once, in ``Category``, by what it subtracts from
what. The catalog table is built at import time and never grows; pairs that
are never filled (the width differences) are kept as inactive entries so the
full set of series is always present.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple, Optional

from ORBIT.src.core.types import SourceKey, Variable


class Scope(Enum):
    RUN = "run"
    LUMI = "lumi"
    VALIDATION = "validation"


class SeriesKind(Enum):
    DISTRIBUTION = "distribution"
    ABSOLUTE = "absolute"
    DIFFERENCE = "difference"


class CategorySpec(NamedTuple):
    label: str
    scope: Scope
    minuend: Optional[SourceKey]  # None means every sampled vertex
    subtrahend: Optional[SourceKey] = None
    requires_fit: bool = False  # the vertex fit must exist even if unused
    with_error: bool = True

    @property
    def per_vertex(self) -> bool:
        return self.minuend is None

    @property
    def is_difference(self) -> bool:
        return self.per_vertex or self.subtrahend is not None


DB = SourceKey.DATABASE
SC = SourceKey.ONLINE
BF = SourceKey.BEAM_FIT
PV = SourceKey.VERTEX_FIT


class Category(Enum):
    COORDINATE = CategorySpec("Coordinate", Scope.RUN, DB)
    PV_FIT_MINUS_DB = CategorySpec("PrimaryVertex fit-DataBase", Scope.RUN, PV, DB, with_error=False)
    PV_FIT_MINUS_BF = CategorySpec("PrimaryVertex fit-BeamFit", Scope.RUN, PV, BF, with_error=False)
    PV_FIT_MINUS_SC = CategorySpec("PrimaryVertex fit-Online", Scope.RUN, PV, SC, with_error=False)
    VERTEX_MINUS_DB = CategorySpec("PrimaryVertex-DataBase", Scope.RUN, None, DB, requires_fit=True)
    VERTEX_MINUS_BF = CategorySpec("PrimaryVertex-BeamFit", Scope.RUN, None, BF, requires_fit=True)
    VERTEX_MINUS_SC = CategorySpec("PrimaryVertex-Online", Scope.RUN, None, SC, requires_fit=True)

    LUMI_BEAM_FIT = CategorySpec("Lumibased BeamSpotFit", Scope.LUMI, BF)
    LUMI_VERTEX_FIT = CategorySpec("Lumibased PrimaryVertex", Scope.LUMI, PV)
    LUMI_DATABASE = CategorySpec("Lumibased DataBase", Scope.LUMI, DB)
    LUMI_ONLINE = CategorySpec("Lumibased Online", Scope.LUMI, SC)
    LUMI_PV_FIT_MINUS_DB = CategorySpec("Lumibased PrimaryVertex-DataBase fit", Scope.LUMI, PV, DB)
    LUMI_PV_FIT_MINUS_SC = CategorySpec("Lumibased PrimaryVertex-Online fit", Scope.LUMI, PV, SC)

    LUMI_ONLINE_MINUS_DB = CategorySpec("Lumibased Online-DataBase fit", Scope.VALIDATION, SC, DB)
    LUMI_VERTEX_MINUS_DB = CategorySpec("Lumibased PrimaryVertex-DataBase", Scope.VALIDATION, None, DB)
    LUMI_VERTEX_MINUS_SC = CategorySpec("Lumibased PrimaryVertex-Online", Scope.VALIDATION, None, SC)

    @property
    def spec(self) -> CategorySpec:
        return self.value

    @property
    def label(self) -> str:
        return self.value.label

    @property
    def scope(self) -> Scope:
        return self.value.scope

    @property
    def kind(self) -> SeriesKind:
        if self.value.scope is Scope.RUN:
            return SeriesKind.DISTRIBUTION
        if self.value.is_difference:
            return SeriesKind.DIFFERENCE
        return SeriesKind.ABSOLUTE

    @property
    def is_time_series(self) -> bool:
        return self.value.scope is not Scope.RUN


class Binning(NamedTuple):
    nbins: int
    low: float
    high: float


class CatalogEntry(NamedTuple):
    variable: Variable
    category: Category
    active: bool
    binning: Optional[Binning]  # run-scope distributions only
    name: str
    title: str
    axis_title: str


def _run_binning(variable: Variable, category: Category) -> Optional[Binning]:
    """Booking ranges of the run-scope distributions (cm)."""
    if category is Category.COORDINATE:
        if variable in (Variable.X, Variable.Y):
            return Binning(1001, -0.2525, 0.2525)
        if variable is Variable.Z:
            return Binning(101, -5.05, 5.05)
        if variable in (Variable.SIGMA_X, Variable.SIGMA_Y):
            return Binning(100, 0.0, 0.015)
        return Binning(110, 0.0, 11.0)

    if variable in (Variable.X, Variable.Y):
        return Binning(1001, -0.02525, 0.02525)
    if variable is Variable.Z:
        if category.spec.per_vertex:
            return Binning(1001, -5.005, 5.005)
        return Binning(101, -0.505, 0.505)
    return None


def _is_active(variable: Variable, category: Category) -> bool:
    # Width differences are reserved but not filled
    if variable.is_width:
        return not category.spec.is_difference
    return True


def _entry(variable: Variable, category: Category) -> CatalogEntry:
    var = variable.value
    label = category.label
    if category.scope is Scope.RUN:
        binning = _run_binning(variable, category)
        if category is Category.COORDINATE:
            axis_title = f"{var}_{{0}} (cm)"
        else:
            axis_title = f"{label} {var}_{{0}} (cm)"
    else:
        binning = None
        if category.spec.is_difference:
            axis_title = f"#Delta {var}_{{0}} (cm)"
        else:
            axis_title = f"{var}_{{0}} (cm)"
    return CatalogEntry(
        variable=variable,
        category=category,
        active=_is_active(variable, category),
        binning=binning,
        name=f"h{var}{label}",
        title=f"{var}_{{0}} {label}",
        axis_title=axis_title,
    )


CATALOG: dict[tuple[Variable, Category], CatalogEntry] = {
    (variable, category): _entry(variable, category) for variable in Variable for category in Category
}


def entry(variable: Variable, category: Category) -> CatalogEntry:
    return CATALOG[(variable, category)]


def folder(config_monitor_name: str, category: Category) -> str:
    """Output folder of a series, relative to the monitor root."""
    prefix = f"{config_monitor_name}/" if config_monitor_name else ""
    if category.scope is Scope.VALIDATION:
        return prefix + "Validation"
    return prefix + "Debug"
