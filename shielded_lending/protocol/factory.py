"""
Proof backend factory.

The backend name comes from Settings.proof_backend (YAML or the
SHIELDED_LENDING_PROOF_BACKEND variable) and is passed in explicitly.
Backends are imported lazily from BACKEND_REGISTRY so that selecting the
disabled backend never imports prover dependencies.
"""

from __future__ import annotations

import importlib
from typing import Any, Dict, Final, Mapping, Optional

from .backends.interfaces import ProofBackend

_PACKAGE: Final[str] = __package__ or "shielded_lending.protocol"

DEFAULT_BACKEND: Final[str] = "disabled"

BACKEND_REGISTRY: Final[dict[str, str]] = {
    "subprocess": f"{_PACKAGE}.backends.subprocess_backend.SubprocessProofBackend",
    "disabled": f"{_PACKAGE}.backends.disabled.DisabledProofBackend",
}

# Constructor options each backend understands
_BACKEND_OPTIONS: Final[dict[str, tuple[str, ...]]] = {
    "subprocess": ("command", "workdir"),
    "disabled": (),
}


def resolve_backend_name(name: str | None) -> str:
    """
    Validate a backend name; None or "" selects DEFAULT_BACKEND.

    Raises:
        ValueError: If the name is not registered.
    """
    if name is None or name == "":
        return DEFAULT_BACKEND
    if not isinstance(name, str) or name not in BACKEND_REGISTRY:
        raise ValueError(
            f"Invalid proof backend: {name!r}. "
            f"Valid options: {', '.join(sorted(BACKEND_REGISTRY))}"
        )
    return name


def _load_backend_class(backend_name: str) -> type[ProofBackend]:
    import_path = BACKEND_REGISTRY[backend_name]
    module_path, _, class_name = import_path.rpartition(".")

    try:
        module = importlib.import_module(module_path)
    except ModuleNotFoundError as exc:
        raise ImportError(
            f"Unable to import backend module {module_path!r} for {backend_name!r}"
        ) from exc

    backend_cls = getattr(module, class_name, None)
    if not isinstance(backend_cls, type) or not issubclass(backend_cls, ProofBackend):
        raise TypeError(f"Backend reference {import_path!r} does not implement ProofBackend")

    return backend_cls


def get_proof_backend(
    name: str | None = None, *, options: Optional[Mapping[str, Any]] = None
) -> ProofBackend:
    """
    Build the named proof backend.

    Args:
        name: Registered backend name; None selects DEFAULT_BACKEND.
        options: Constructor options; keys the chosen backend does not
            understand are ignored, None values are dropped.

    Raises:
        ValueError: If the name is invalid.
        ImportError: If the backend module cannot be imported.
        TypeError: If the backend class does not implement ProofBackend.
    """
    backend_name = resolve_backend_name(name)
    backend_cls = _load_backend_class(backend_name)

    accepted = _BACKEND_OPTIONS[backend_name]
    kwargs: Dict[str, Any] = {
        key: value
        for key, value in (options or {}).items()
        if key in accepted and value is not None
    }
    return backend_cls(**kwargs)
