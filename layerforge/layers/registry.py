"""Layer registry: maps a definition's ``type`` tag to a Layer class."""

from __future__ import annotations

from typing import Callable, Iterable, Mapping

from layerforge.errors import ConfigurationError
from layerforge.layers.base import Layer, LayerBuild

LAYER_REGISTRY: dict[str, type[Layer]] = {}


def register_layer(kind: str) -> Callable[[type[Layer]], type[Layer]]:
    """Class decorator registering a Layer subclass under ``kind``."""

    def decorator(cls: type[Layer]) -> type[Layer]:
        if kind in LAYER_REGISTRY and LAYER_REGISTRY[kind] is not cls:
            raise ValueError(f"Layer kind '{kind}' is already registered")
        cls.kind = kind
        LAYER_REGISTRY[kind] = cls
        return cls

    return decorator


def available_kinds() -> Iterable[str]:
    return sorted(LAYER_REGISTRY)


def create_layer(
    spec: Mapping, index: int, in_channels: int, build: LayerBuild
) -> Layer:
    """
    Construct a layer from one definition entry.

    ``spec`` holds ``type`` (the kind tag), an optional ``name`` and the
    kind-specific options, which are passed to the constructor as
    keyword arguments.

    Raises
    ------
    ConfigurationError
        If the kind is unknown or the options do not fit the layer.
    """
    options = dict(spec)
    kind = options.pop("type", None)
    if kind not in LAYER_REGISTRY:
        available = ", ".join(available_kinds())
        raise ConfigurationError(
            f"layer {index} has unknown type {kind!r}. Available: {available}",
            field=f"layers[{index - 1}].type",
        )
    name = str(options.pop("name", f"{kind}_{index}"))
    cls = LAYER_REGISTRY[kind]
    try:
        return cls(index, name, in_channels, build, **options)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"layer {index} ({name}): {e}",
            field=f"layers[{index - 1}]",
        ) from e
