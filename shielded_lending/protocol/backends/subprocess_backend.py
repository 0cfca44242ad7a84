"""External prover invoked as a subprocess."""

from __future__ import annotations

import json
import logging
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import trio

from ..config import MAX_PROOF_BYTES
from ..exceptions import ProofBackendUnavailable
from .interfaces import ProofBackend

logger = logging.getLogger(__name__)

DEFAULT_PROVER_COMMAND = "lending-prover --inputs {input} --proof-out {output}"


class SubprocessProofBackend(ProofBackend):
    """
    Run a prover binary on a JSON input file and read the proof it writes.

    The command template must reference {input} and {output}; both are
    replaced with paths inside a private temporary directory.

    Example:
        backend = SubprocessProofBackend("nargo-prove --in {input} --out {output}")
        proof = await backend.prove(proof_input.to_backend_dict())
    """

    name = "subprocess"

    def __init__(
        self,
        command: Union[str, Sequence[str], None] = None,
        workdir: Optional[Union[str, Path]] = None,
    ) -> None:
        if command is None:
            command = DEFAULT_PROVER_COMMAND
        self._command: List[str] = (
            shlex.split(command) if isinstance(command, str) else list(command)
        )
        if not self._command:
            raise ValueError("prover command must not be empty")
        template = " ".join(self._command)
        if "{input}" not in template or "{output}" not in template:
            raise ValueError("prover command must reference {input} and {output}")
        self._workdir = Path(workdir) if workdir is not None else None

    def _binary(self) -> Optional[str]:
        return shutil.which(self._command[0])

    def is_available(self) -> bool:
        return self._binary() is not None

    def _render(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            part.replace("{input}", str(input_path)).replace("{output}", str(output_path))
            for part in self._command
        ]

    async def prove(self, inputs: Dict[str, Any]) -> bytes:
        if not self.is_available():
            raise ProofBackendUnavailable(
                f"prover binary not found: {self._command[0]}"
            )

        with tempfile.TemporaryDirectory() as tmp_dir:
            input_path = Path(tmp_dir) / "inputs.json"
            output_path = Path(tmp_dir) / "proof.bin"
            input_path.write_text(json.dumps(inputs, sort_keys=True), encoding="utf-8")

            command = self._render(input_path, output_path)
            logger.debug("running prover %s", command[0])
            try:
                result = await trio.run_process(
                    command,
                    capture_stdout=True,
                    capture_stderr=True,
                    check=False,
                    cwd=self._workdir,
                )
            except OSError as exc:
                raise ProofBackendUnavailable(f"failed to start prover: {exc}") from exc

            if result.returncode != 0:
                stderr = result.stderr.decode("utf-8", "replace").strip()
                raise ProofBackendUnavailable(
                    f"prover failed: {stderr or 'unknown prover error'}"
                )
            if not output_path.exists():
                raise ProofBackendUnavailable("prover did not write a proof")

            proof = output_path.read_bytes()

        if not proof:
            raise ProofBackendUnavailable("prover wrote an empty proof")
        if len(proof) > MAX_PROOF_BYTES:
            raise ProofBackendUnavailable("proof too large")
        return proof

    def get_backend_info(self) -> Dict[str, Any]:
        info = super().get_backend_info()
        info["command"] = self._command[0]
        return info


__all__ = ["SubprocessProofBackend", "DEFAULT_PROVER_COMMAND"]
