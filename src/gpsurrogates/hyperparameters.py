"""Hyperparameter records and box-constrained priors over them.

A `HyperparameterRecord` is an immutable name → scalar mapping. Its names are
static and its values dynamic, so during hyperparameter search a record can
carry JAX tracers straight into a user's kernel builder.

`BoundedHyperparameters` is the prior handed to
`GPSurrogate.update_hyperparameters`: a `(lower, upper)` box for each
parameter that should be optimized.
"""

import math
from collections.abc import Mapping

import jax.numpy as jnp

from gpsurrogates.core import Any, Iterator, Optional, Pytree, Tuple
from gpsurrogates.errors import InvalidArgument

NOISE_VAR = "noise_var"


def _scalar(value):
    if isinstance(value, (bool, int, float)):
        return float(value)
    return value


@Pytree.dataclass
class HyperparameterRecord(Pytree):
    """Immutable mapping from hyperparameter name to scalar value.

    Build one with `HyperparameterRecord.create`:

    >>> record = HyperparameterRecord.create(noise_var=0.1, lengthscale=2.0)
    >>> record["lengthscale"]
    2.0
    >>> record.without("noise_var").to_dict()
    {'lengthscale': 2.0}
    """

    names: Tuple[str, ...] = Pytree.static(default=())
    values: Tuple[Any, ...] = ()

    @classmethod
    def create(
        cls, mapping: Optional[Mapping[str, Any]] = None, /, **kwargs
    ) -> "HyperparameterRecord":
        items = dict(mapping or {})
        items.update(kwargs)
        return cls(
            names=tuple(items),
            values=tuple(_scalar(v) for v in items.values()),
        )

    # Mapping protocol

    def __getitem__(self, name: str):
        try:
            return self.values[self.names.index(name)]
        except ValueError:
            raise KeyError(name) from None

    def __contains__(self, name) -> bool:
        return name in self.names

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    def get(self, name: str, default=None):
        return self[name] if name in self else default

    def keys(self):
        return self.names

    def items(self):
        return tuple(zip(self.names, self.values))

    def to_dict(self) -> dict:
        return dict(self.items())

    def __eq__(self, other):
        if isinstance(other, HyperparameterRecord):
            other = other.to_dict()
        if not isinstance(other, Mapping):
            return NotImplemented
        return self.to_dict() == dict(other)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.items())
        return f"HyperparameterRecord({fields})"

    # Persistent updates

    def with_default(
        self, defaults: "Mapping[str, Any] | HyperparameterRecord"
    ) -> "HyperparameterRecord":
        """Add the entries of `defaults` whose names are missing; existing values win."""
        merged = dict(as_record(defaults).items())
        merged.update(self.items())
        return HyperparameterRecord.create(merged)

    def without(self, *names: str) -> "HyperparameterRecord":
        """Drop `names` (absent names are ignored)."""
        return HyperparameterRecord.create(
            {k: v for k, v in self.items() if k not in names}
        )

    def replace(self, updates: Mapping[str, Any]) -> "HyperparameterRecord":
        """Set the entries of `updates`, keeping the order of existing names."""
        merged = self.to_dict()
        merged.update(updates)
        return HyperparameterRecord.create(merged)

    @property
    def noise_var(self):
        return self[NOISE_VAR]


def as_record(obj: "Mapping[str, Any] | HyperparameterRecord | None") -> HyperparameterRecord:
    """Coerce a plain mapping (or `None`) to a `HyperparameterRecord`."""
    if isinstance(obj, HyperparameterRecord):
        return obj
    return HyperparameterRecord.create(obj or {})


DEFAULT_HYPERPARAMETERS = HyperparameterRecord.create(noise_var=0.1)
NOISE_DEFAULT = HyperparameterRecord.create(noise_var=0.0)


@Pytree.dataclass
class BoundedHyperparameters(Pytree):
    """Box-constrained prior: hyperparameter name → `(lower, upper)`.

    Only the named parameters are optimized; every other entry of a record
    stays at its current value. Infinite bounds are allowed. An empty box
    (`lower > upper`) is accepted here and reported by the optimizer.

    >>> prior = BoundedHyperparameters.create(noise_var=(1e-4, 1.0))
    >>> prior.bounds_for("noise_var")
    (0.0001, 1.0)
    """

    names: Tuple[str, ...] = Pytree.static(default=())
    lower: Tuple[float, ...] = Pytree.static(default=())
    upper: Tuple[float, ...] = Pytree.static(default=())

    @classmethod
    def create(
        cls, mapping: Optional[Mapping[str, Any]] = None, /, **kwargs
    ) -> "BoundedHyperparameters":
        items = dict(mapping or {})
        items.update(kwargs)
        lower, upper = [], []
        for name, box in items.items():
            try:
                lo, hi = box
                lo, hi = float(lo), float(hi)
            except (TypeError, ValueError):
                raise InvalidArgument(
                    f"Bounds for {name!r} must be a (lower, upper) pair of numbers, got {box!r}"
                ) from None
            if math.isnan(lo) or math.isnan(hi):
                raise InvalidArgument(f"Bounds for {name!r} contain NaN")
            lower.append(lo)
            upper.append(hi)
        return cls(names=tuple(items), lower=tuple(lower), upper=tuple(upper))

    def __contains__(self, name) -> bool:
        return name in self.names

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    def bounds_for(self, name: str) -> Tuple[float, float]:
        i = self.names.index(name)
        return self.lower[i], self.upper[i]

    def items(self):
        return tuple(zip(self.names, zip(self.lower, self.upper)))

    def is_empty_box(self) -> bool:
        return any(lo > hi for lo, hi in zip(self.lower, self.upper))

    def contains(self, record: Mapping[str, Any]) -> bool:
        """Whether every bounded entry of `record` lies inside its box."""
        for name, (lo, hi) in self.items():
            if name not in record:
                return False
            value = float(jnp.asarray(record[name]))
            if not lo <= value <= hi:
                return False
        return True


def as_prior(obj: "Mapping[str, Any] | BoundedHyperparameters") -> BoundedHyperparameters:
    """Coerce a plain `{name: (lower, upper)}` mapping to `BoundedHyperparameters`."""
    if isinstance(obj, BoundedHyperparameters):
        return obj
    return BoundedHyperparameters.create(obj)
