"""
Workload Catalog

Loads WorkloadDefinitions from YAML. The built-in catalog ships as
``cutbench/workloads/builtin.yaml``; user files use the same format and may
override built-ins by name.

Parameters are declared as a list of generators, one per ``$n`` placeholder:

    parameters:
      - {type: int_range, min: 1, max: 10000}
      - {type: float_range, min: 1.0, max: 500.0, digits: 2}
      - {type: choice, values: [Pending, Shipped]}
      - {type: const, value: 90}
      - {type: sequence, start: 100, step: 1, modulo: 100}
"""

from __future__ import annotations

import itertools
import logging
import random
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from cutbench.models.workload import (
    ParameterGenerator,
    WorkloadDefinition,
    WorkloadRole,
    no_parameters,
)

logger = logging.getLogger(__name__)

BUILTIN_WORKLOADS_FILE = (
    Path(__file__).resolve().parent.parent / "workloads" / "builtin.yaml"
)


class WorkloadCatalogError(ValueError):
    """A workload file could not be turned into definitions."""


def _value_factory(spec: Dict[str, Any], rng: random.Random) -> Callable[[], Any]:
    kind = str(spec.get("type", "")).strip().lower()

    if kind == "const":
        if "value" not in spec:
            raise WorkloadCatalogError("const parameter needs 'value'")
        value = spec["value"]
        return lambda: value

    if kind == "int_range":
        lo, hi = int(spec["min"]), int(spec["max"])
        if lo > hi:
            raise WorkloadCatalogError(f"int_range min {lo} > max {hi}")
        return lambda: rng.randint(lo, hi)

    if kind == "float_range":
        flo, fhi = float(spec["min"]), float(spec["max"])
        if flo > fhi:
            raise WorkloadCatalogError(f"float_range min {flo} > max {fhi}")
        digits = spec.get("digits")
        if digits is None:
            return lambda: rng.uniform(flo, fhi)
        return lambda: round(rng.uniform(flo, fhi), int(digits))

    if kind == "choice":
        values = list(spec.get("values") or [])
        if not values:
            raise WorkloadCatalogError("choice parameter needs a non-empty 'values' list")
        return lambda: rng.choice(values)

    if kind == "sequence":
        start = int(spec.get("start", 0))
        step = int(spec.get("step", 1))
        modulo = spec.get("modulo")
        if modulo is not None and int(modulo) <= 0:
            raise WorkloadCatalogError("sequence modulo must be > 0")
        counter = itertools.count()
        if modulo is None:
            return lambda: start + next(counter) * step
        m = int(modulo)
        return lambda: start + (next(counter) * step) % m

    raise WorkloadCatalogError(f"Unknown parameter generator type: {kind!r}")


def build_parameter_generator(
    specs: Optional[Iterable[Dict[str, Any]]],
    rng: Optional[random.Random] = None,
) -> ParameterGenerator:
    """Combine per-placeholder generator specs into one ParameterGenerator."""
    specs = list(specs or [])
    if not specs:
        return no_parameters
    rng = rng or random.Random()
    try:
        factories = [_value_factory(dict(s), rng) for s in specs]
    except (KeyError, TypeError) as e:
        raise WorkloadCatalogError(f"Invalid parameter spec: {e}") from e

    def generate() -> tuple[Any, ...]:
        return tuple(f() for f in factories)

    return generate


def _optional(value: Any, cast: Callable[[Any], Any]) -> Any:
    return None if value is None else cast(value)


def workload_from_dict(
    data: Dict[str, Any], rng: Optional[random.Random] = None
) -> WorkloadDefinition:
    """Build one WorkloadDefinition from its YAML mapping."""
    name = str(data.get("name") or "").strip()
    if not name:
        raise WorkloadCatalogError("Workload entry without a name")
    statement = data.get("statement") or data.get("statement_template") or ""
    weight = data.get("weight")

    try:
        return WorkloadDefinition(
            name=name,
            statement_template=str(statement).strip(),
            parameter_generator=build_parameter_generator(data.get("parameters"), rng),
            target_rate_per_second=_optional(data.get("target_rate_per_second"), float),
            total_iterations=_optional(data.get("total_iterations"), int),
            weight=1.0 if weight is None else float(weight),
            role=WorkloadRole(str(data.get("role", "victim")).lower()),
            description=str(data.get("description", "")).strip(),
            requires_tables=tuple(data.get("requires_tables") or ()),
            session_settings={
                str(k): str(v) for k, v in (data.get("session_settings") or {}).items()
            },
            timeout_seconds=_optional(data.get("timeout_seconds"), float),
        )
    except WorkloadCatalogError:
        raise
    except (ValueError, TypeError) as e:
        raise WorkloadCatalogError(f"Workload {name!r}: {e}") from e


def load_workload_file(
    path: Path, rng: Optional[random.Random] = None
) -> List[WorkloadDefinition]:
    """
    Load every workload of a YAML file.

    Raises:
        FileNotFoundError: the file does not exist
        WorkloadCatalogError: malformed content
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workload file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("workloads") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise WorkloadCatalogError(f"{path}: expected a 'workloads' list")

    workloads = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise WorkloadCatalogError(f"{path}: workload entries must be mappings")
        workloads.append(workload_from_dict(entry, rng))
    logger.debug("Loaded %d workloads from %s", len(workloads), path)
    return workloads


class WorkloadCatalog:
    """Named WorkloadDefinitions available to a run."""

    def __init__(self, workloads: Iterable[WorkloadDefinition] = ()) -> None:
        self._workloads: Dict[str, WorkloadDefinition] = {}
        for w in workloads:
            self.add(w)

    @classmethod
    def load(
        cls,
        extra_files: Iterable[Path] = (),
        *,
        include_builtin: bool = True,
        seed: Optional[int] = None,
    ) -> "WorkloadCatalog":
        """Built-in workloads plus ``extra_files``; later files win on name clashes."""
        rng = random.Random(seed)
        catalog = cls()
        files = ([BUILTIN_WORKLOADS_FILE] if include_builtin else []) + [
            Path(p) for p in extra_files
        ]
        for path in files:
            for w in load_workload_file(path, rng):
                if w.name in catalog:
                    logger.info("Workload %s overridden by %s", w.name, path)
                catalog.add(w)
        return catalog

    def add(self, workload: WorkloadDefinition) -> None:
        self._workloads[workload.name] = workload

    def get(self, name: str) -> WorkloadDefinition:
        try:
            return self._workloads[name]
        except KeyError:
            raise KeyError(
                f"Unknown workload {name!r}; available: {', '.join(self.names())}"
            ) from None

    def names(self) -> List[str]:
        return sorted(self._workloads)

    def __contains__(self, name: object) -> bool:
        return name in self._workloads

    def __iter__(self):
        return iter(self._workloads[n] for n in self.names())

    def __len__(self) -> int:
        return len(self._workloads)
