from dataclasses import field
from typing import overload

import beartype.typing as btyping
import jax.numpy as jnp
import jaxtyping as jtyping
import penzai.pz as pz
from typing_extensions import dataclass_transform

##########
# Typing #
##########

Any = btyping.Any
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
Callable = btyping.Callable
Mapping = btyping.Mapping
Iterator = btyping.Iterator
Optional = btyping.Optional
Tuple = btyping.Tuple
TypeVar = btyping.TypeVar

R = TypeVar("R")

# Inputs are either a batch of scalars `(n,)` or a batch of vectors `(n, d)`.
Inputs = jtyping.Float[jtyping.Array, "n ..."]
Outputs = jtyping.Float[jtyping.Array, " n"]

##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system, so kernels, mean functions, GP objects and hyperparameter records
    can cross `jax.grad` / `jax.jit` boundaries unchanged.

    Inheriting this class provides the implementor with the freedom to
    declare how the subfields of a class should behave:

    * `Pytree.static(...)`: the value of the field cannot
    be a JAX traced value, it must be a Python literal, or a constant.
    The values of static fields are embedded in the `PyTreeDef` of any
    instance of the class.
    * `Pytree.field(...)` or no annotation: the value may be a JAX traced
    value, and JAX will attempt to convert it to tracer values inside of
    its transformations.

    If a field _points to another `Pytree`_, it should not be declared as
    `Pytree.static()`, as the `Pytree` interface will automatically handle
    the `Pytree` fields as dynamic fields.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """
        Denote that a class (which is inheriting `Pytree`) should be treated
        as a frozen dataclass, with JAX's `Pytree` interfaces
        (`tree_flatten`, `tree_unflatten`, etc.) derived from the declared
        fields and their `Pytree.static(...)` / `Pytree.field(...)`
        annotations.

        Examples
        --------

        >>> from gpsurrogates.core import Pytree
        >>> import jax.numpy as jnp
        >>>
        >>> @Pytree.dataclass
        ... class Scaled(Pytree):
        ...     factor: jnp.ndarray
        ...     name: str = Pytree.static(default="scaled")
        >>>
        >>> Scaled(jnp.array(2.0)).name
        'scaled'
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static.
        Fields which are provided with default values must come after
        required fields in the dataclass declaration."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic.
        Alternatively, one can leave the annotation off in the declaration."""
        return field(**kwargs)


def as_inputs(xs: ArrayLike) -> Array:
    """Convert training or query inputs to the 2-D `(n, d)` layout kernels use.

    A 1-D batch is read as `n` scalar inputs, i.e. `(n, 1)`.
    """
    xs = jnp.asarray(xs, dtype=float)
    if xs.ndim == 1:
        return xs[:, None]
    return xs
