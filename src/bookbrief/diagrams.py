from __future__ import annotations

import json
import logging
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

MERMAID_THEME_CONFIG: dict[str, object] = {
    "theme": "default",
    "securityLevel": "strict",
    "fontFamily": "Inter, sans-serif",
    "fontSize": 14,
    "flowchart": {
        "useMaxWidth": True,
        "htmlLabels": False,
        "curve": "basis",
    },
    "themeVariables": {
        "primaryColor": "#f59e0b",
        "primaryTextColor": "#1f2937",
        "primaryBorderColor": "#d97706",
        "lineColor": "#6b7280",
        "secondaryColor": "#fef3c7",
        "tertiaryColor": "#fff7ed",
    },
}


class DiagramRenderError(RuntimeError):
    """Raised when a diagram source cannot be rendered."""


class DiagramEngine(Protocol):
    def render(self, source: str, diagram_id: str) -> str: ...


class MermaidCliEngine:
    """
    Render mermaid sources to SVG with the mermaid-cli (``mmdc``) executable.

    The theme configuration is written once, on first use, into a private
    working directory that lives as long as the engine.
    """

    def __init__(
        self,
        mmdc_path: str = "mmdc",
        *,
        timeout: float = 60.0,
        config: dict[str, object] | None = None,
    ) -> None:
        self.mmdc_path = mmdc_path
        self.timeout = timeout
        self._config = dict(config or MERMAID_THEME_CONFIG)
        self._init_lock = threading.Lock()
        self._workdir: tempfile.TemporaryDirectory[str] | None = None
        self._config_path: Path | None = None

    @property
    def initialized(self) -> bool:
        return self._config_path is not None

    def initialize(self) -> None:
        with self._init_lock:
            if self._config_path is not None:
                return
            self._workdir = tempfile.TemporaryDirectory(prefix="bookbrief-mermaid-")
            config_path = Path(self._workdir.name) / "mermaid-config.json"
            config_path.write_text(json.dumps(self._config, indent=2), encoding="utf-8")
            self._config_path = config_path
            logger.debug("Mermaid engine initialized with %s", config_path)

    def render(self, source: str, diagram_id: str) -> str:
        if not source.strip():
            raise DiagramRenderError("Diagram source is empty.")
        self.initialize()
        assert self._config_path is not None
        with tempfile.TemporaryDirectory(prefix="bookbrief-diagram-") as tmp:
            input_path = Path(tmp) / "diagram.mmd"
            output_path = Path(tmp) / "diagram.svg"
            input_path.write_text(source, encoding="utf-8")
            cmd = [
                self.mmdc_path,
                "--input",
                str(input_path),
                "--output",
                str(output_path),
                "--configFile",
                str(self._config_path),
                "--backgroundColor",
                "transparent",
                "--svgId",
                diagram_id,
                "--quiet",
            ]
            try:
                subprocess.run(
                    cmd,
                    check=True,
                    capture_output=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError as exc:
                raise DiagramRenderError(
                    f"mermaid-cli executable not found: {self.mmdc_path}"
                ) from exc
            except subprocess.TimeoutExpired as exc:
                raise DiagramRenderError(
                    f"mermaid-cli timed out after {self.timeout:g}s"
                ) from exc
            except subprocess.CalledProcessError as exc:
                stderr = exc.stderr.decode("utf-8", errors="ignore") if exc.stderr else ""
                raise DiagramRenderError(f"mermaid-cli failed: {stderr.strip()}") from exc
            try:
                svg = output_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise DiagramRenderError("mermaid-cli produced no readable output") from exc
        if "<svg" not in svg:
            raise DiagramRenderError("mermaid-cli produced no SVG markup")
        return svg

    def close(self) -> None:
        with self._init_lock:
            if self._workdir is not None:
                self._workdir.cleanup()
            self._workdir = None
            self._config_path = None


__all__ = [
    "DiagramEngine",
    "DiagramRenderError",
    "MERMAID_THEME_CONFIG",
    "MermaidCliEngine",
]
