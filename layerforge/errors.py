"""
LayerForge Error Hierarchy
===========================
Every failure the execution core reports is a subclass of
:class:`LayerForgeError`, so callers can catch the whole family at once
or pick the category they care about.

Error Categories:
    - ConfigurationError: malformed or missing definition/config fields
    - PassError: a layer failed during forward, backward or update
        - ForwardError / BackwardError / UpdateError
    - ReentrantPassError: a pass was started while another is in flight
    - ResourceError: device or host allocation failed
        - WorkspaceAllocationError / TensorAllocationError
    - CheckpointError: a parameter checkpoint is missing or inconsistent
    - TrainingAbortedError: the training loop stopped on a failure
"""

from __future__ import annotations

from typing import Optional


class LayerForgeError(Exception):
    """
    Base class for all LayerForge errors.

    Attributes
    ----------
    message : str
        Human-readable error message.
    suggestions : list[str]
        Hints for fixing the problem, printed under the message.
    context : dict
        Extra key/value pairs for debugging.
    """

    def __init__(
        self,
        message: str,
        suggestions: Optional[list[str]] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.suggestions = suggestions or []
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]

        if self.suggestions:
            lines.append("")
            lines.append("Suggestions:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"  {i}. {suggestion}")

        if self.context:
            lines.append("")
            lines.append("Context:")
            for key, value in self.context.items():
                lines.append(f"  {key}: {value}")

        return "\n".join(lines)


class ConfigurationError(LayerForgeError):
    """A required definition or config field is missing or malformed."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        suggestions: Optional[list[str]] = None,
    ):
        self.field = field
        context = {"field": field} if field else None
        super().__init__(
            message=f"Invalid configuration: {message}",
            suggestions=suggestions,
            context=context,
        )


# =============================================================================
# Pass errors
# =============================================================================

class PassError(LayerForgeError):
    """
    A layer failed during a forward, backward or update pass.

    The enclosing pass is abandoned; nothing after the failing layer ran.
    The original exception is chained as ``__cause__``.
    """

    phase = "pass"

    def __init__(self, layer_index: int, layer_name: str, reason: str = ""):
        self.layer_index = layer_index
        self.layer_name = layer_name
        message = (
            f"{self.phase.capitalize()} failed at layer "
            f"{layer_index} ({layer_name})"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            context={"index": layer_index, "name": layer_name},
        )


class ForwardError(PassError):
    phase = "forward"


class BackwardError(PassError):
    phase = "backward"


class UpdateError(PassError):
    phase = "update"


class ReentrantPassError(LayerForgeError):
    """A pass was started on a graph that already has one in flight."""

    def __init__(self, requested: str, active: str):
        super().__init__(
            message=(
                f"Cannot start {requested} while {active} is running on "
                f"the same graph"
            ),
            suggestions=[
                "Use one NetworkGraph per control thread",
                "Finish the current pass before starting another",
            ],
        )


# =============================================================================
# Resource errors
# =============================================================================

class ResourceError(LayerForgeError):
    """Device or host memory could not be allocated."""

    def __init__(
        self,
        message: str,
        requested_bytes: Optional[int] = None,
        device: Optional[str] = None,
    ):
        self.requested_bytes = requested_bytes
        self.device = device
        context = {}
        if requested_bytes is not None:
            context["requested_mb"] = f"{requested_bytes / 1024 / 1024:.2f}"
        if device is not None:
            context["device"] = device
        super().__init__(
            message=message,
            suggestions=[
                "Reduce the mini-batch size (raise subdivisions)",
                "Reduce the input resolution",
            ],
            context=context,
        )


class WorkspaceAllocationError(ResourceError):
    pass


class TensorAllocationError(ResourceError):
    pass


# =============================================================================
# Checkpoint and loop errors
# =============================================================================

class CheckpointError(LayerForgeError):
    """A parameter checkpoint is missing, corrupt or does not fit the graph."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(
            message=message,
            context={"path": path} if path else None,
        )


class TrainingAbortedError(LayerForgeError):
    """The training loop stopped because a step failed."""

    def __init__(self, iteration: int, reason: str):
        self.iteration = iteration
        super().__init__(
            message=f"Training aborted at iteration {iteration}: {reason}",
            suggestions=[
                "Resume from the last checkpoint once the cause is fixed",
            ],
            context={"iteration": iteration},
        )
