"""Function-Manager: Upload, Analyse, Ausführung und Verwaltung von Funktionen.

Bündelt Artifact-Store, Dependency-Resolver und Execution-Engine zu den
Operationen, die CLI und Scheduler nutzen.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from fnhost.config import FnHostConfig
from fnhost.core.dependencies import DependencyResolver
from fnhost.core.errors import DependencyInstallError, ValidationError
from fnhost.core.executor import ExecutionEngine
from fnhost.core.store import ArtifactStore
from fnhost.models import FunctionArtifact, Language, StepReport, UploadReport
from fnhost.utils.logging import get_logger

log = get_logger(__name__)


class FunctionManager:
    """Fassade über Store, Resolver und Engine.

    Attributes:
        store: Artifact-Store.
        resolver: Dependency-Resolver.
        engine: Execution-Engine.
    """

    def __init__(self, config: FnHostConfig) -> None:
        self._config = config
        self.store = ArtifactStore(config)
        self.resolver = DependencyResolver(config)
        self.engine = ExecutionEngine(config, self.store, self.resolver)

    def list(self) -> list[FunctionArtifact]:
        return self.store.list()

    async def upload(self, filename: str, data: bytes) -> UploadReport:
        """Speichert eine Funktion, kompiliert sie und installiert Abhängigkeiten.

        Args:
            filename: Dateiname inkl. Endung (.js oder .ts). Verzeichnisanteile
                werden ignoriert.
            data: Dateiinhalt.

        Raises:
            ValidationError: Nicht unterstützte Endung oder ungültiger Name.
            CompilationError: TypeScript-Fehler (Quelle wird entfernt).
        """
        path = Path(Path(filename).name)
        if Language.from_extension(path.suffix) is None:
            raise ValidationError(
                "Only .js and .ts files are allowed",
                error_code="INVALID_EXTENSION",
                details={"filename": filename},
            )

        artifact = self.store.add(path.stem, data, path.suffix)

        compilation: StepReport | None = None
        if artifact.language is Language.TYPESCRIPT:
            compiled = await self.store.compile(artifact.path)
            artifact = artifact.model_copy(update={"compiled_path": compiled})
            compilation = StepReport(success=True, output=f"Compiled to {compiled}")

        dependencies = self.resolver.extract(data.decode("utf-8", errors="replace"))
        artifact = artifact.model_copy(update={"dependencies": dependencies})
        installation = await self._install(artifact.name, dependencies)

        log.info(
            "function_uploaded",
            function=artifact.name,
            language=artifact.type,
            dependencies=len(dependencies),
        )
        return UploadReport(
            function=artifact,
            compilation=compilation,
            dependency_installation=installation,
        )

    async def analyze(self, name: str) -> StepReport:
        """Ermittelt die Abhängigkeiten einer gespeicherten Funktion neu und installiert sie.

        Raises:
            ValidationError: Funktion existiert nicht.
        """
        source = self.store.read_source(name)
        dependencies = self.resolver.extract(source)
        return await self._install(name, dependencies)

    async def _install(self, name: str, dependencies: dict[str, str]) -> StepReport:
        if not dependencies:
            return StepReport(success=True, dependencies={}, output="No dependencies to install")
        try:
            directory = await self.resolver.install_dependencies(name, dependencies)
        except DependencyInstallError as exc:
            log.warning("function_dependencies_failed", function=name, error=exc.message)
            return StepReport(success=False, dependencies=dependencies, error=exc.message)
        return StepReport(
            success=True,
            dependencies=dependencies,
            output=f"Installed into {directory}",
        )

    async def execute(
        self,
        name: str,
        input: Any = None,
        *,
        env: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        """Führt eine Funktion aus und liefert die externe Darstellung."""
        result = await self.engine.execute(name, input, env=env, timeout_ms=timeout_ms)
        return result.to_api()

    def delete(self, name: str) -> bool:
        """Entfernt Artefakt und Dependency-Verzeichnis.

        Zeitpläne, die auf die Funktion verweisen, bleiben bestehen.
        """
        removed = self.store.delete(name)
        deps_removed = self.resolver.remove(name)
        return removed or deps_removed

    def get_env(self, name: str) -> dict[str, str]:
        return self.store.get_env(name)

    def set_env(self, name: str, env_vars: dict[str, str]) -> None:
        self.store.set_env(name, env_vars)
