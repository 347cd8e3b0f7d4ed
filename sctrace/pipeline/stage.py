"""Stage representation and contract validation for pipeline execution."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple


def _type_name(kind: Any) -> str:
    return getattr(kind, "__name__", repr(kind))


@dataclass
class Stage:
    """A single pipeline stage with typed inputs, output and dependencies.

    Attributes
    ----------
    name : str
        Human-readable stage name (e.g., "Cell Quality Control")
    stage_id : str
        Short identifier (e.g., "qc", "merge"); the stage output is
        published under this id
    func : Callable
        Pure function called with the resolved inputs as keyword arguments
    inputs : Dict[str, type]
        Input artifact name to expected artifact type; a name refers to an
        upstream ``stage_id`` or to an external pipeline input
    output : type
        Type of the artifact the stage returns
    depends_on : List[str]
        Stage IDs this stage depends on
    config : Any
        Stage configuration, hashed into the cache key
    optional : bool
        Whether this stage may be skipped

    Example
    -------
    >>> stage = Stage(
    ...     name="Merge",
    ...     stage_id="merge",
    ...     func=merger.merge_samples,
    ...     inputs={"samples": list},
    ...     output=MergeResult,
    ... )
    >>> valid, errors = stage.validate_contract({"samples": list})
    """

    name: str
    stage_id: str
    func: Optional[Callable[..., Any]] = None
    inputs: Dict[str, type] = field(default_factory=dict)
    output: type = object
    depends_on: List[str] = field(default_factory=list)
    config: Any = None
    optional: bool = False

    def validate_contract(self, available: Mapping[str, type]) -> Tuple[bool, List[str]]:
        """Check that every input is produced upstream with a compatible type.

        Parameters
        ----------
        available : Mapping[str, type]
            Artifact name to type, for external inputs and for the outputs
            of the other registered stages

        Returns
        -------
        Tuple[bool, List[str]]
            (success, errors)
        """
        errors = []

        if self.func is None:
            errors.append(f"Stage '{self.stage_id}' has no callable")

        for name, expected in self.inputs.items():
            if name not in available:
                errors.append(
                    f"Stage '{self.stage_id}' input '{name}' is not produced by any stage"
                )
                continue
            produced = available[name]
            if not (isinstance(produced, type) and issubclass(produced, expected)):
                errors.append(
                    f"Stage '{self.stage_id}' input '{name}' expects {_type_name(expected)}, "
                    f"got {_type_name(produced)}"
                )

        return (len(errors) == 0, errors)

    def validate_inputs(self, values: Mapping[str, Any]) -> Tuple[bool, List[str]]:
        """Check resolved input values against the declared types at run time."""
        errors = []
        for name, expected in self.inputs.items():
            if name not in values:
                errors.append(f"Input '{name}' missing for stage '{self.stage_id}'")
            elif not isinstance(values[name], expected):
                errors.append(
                    f"Input '{name}' of stage '{self.stage_id}' is "
                    f"{type(values[name]).__name__}, expected {_type_name(expected)}"
                )
        return (len(errors) == 0, errors)

    def validate_output(self, value: Any) -> Tuple[bool, List[str]]:
        if isinstance(value, self.output):
            return True, []
        return False, [
            f"Stage '{self.stage_id}' returned {type(value).__name__}, "
            f"expected {_type_name(self.output)}"
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage to dictionary for reporting.

        Returns
        -------
        Dict[str, Any]
            Stage contract as dictionary (types by name)
        """
        return {
            "name": self.name,
            "stage_id": self.stage_id,
            "depends_on": list(self.depends_on),
            "inputs": {k: _type_name(v) for k, v in self.inputs.items()},
            "output": _type_name(self.output),
            "optional": self.optional,
        }
