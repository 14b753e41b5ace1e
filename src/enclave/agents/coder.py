"""Coder worker: runs scripts and commands inside the isolation runtime."""

import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

from enclave.agents.base import BaseWorker
from enclave.core.errors import ToolInputError
from enclave.core.models import AgentResult, AgentTask, WorkerRole, WorkerStatus
from enclave.isolation.models import ExecuteResult

LANGUAGE_BY_EXTENSION = {
    ".py": "python",
    ".r": "r",
    ".m": "matlab",
    ".sh": "bash",
    ".js": "node",
    ".ts": "node",
    ".sql": "sql",
    ".stan": "stan",
}

DEFAULT_LANGUAGE = "python"

REVIEW_CHECKLISTS = {
    "correctness": [
        "Logic is correct for intended purpose",
        "Edge cases are handled",
        "Error handling is appropriate",
    ],
    "style": ["Follows language conventions", "Consistent naming", "Adequate documentation"],
    "performance": ["No unnecessary loops", "Efficient data structures", "Resource cleanup"],
    "security": ["Input validation", "No hardcoded secrets", "Safe file operations"],
}


def detect_language(path: str) -> str:
    """Map a file extension to a language name; unknown extensions mean python."""
    return LANGUAGE_BY_EXTENSION.get(PurePosixPath(path).suffix.lower(), DEFAULT_LANGUAGE)


def run_command(script: str, language: str, args: list[str] | None = None) -> str:
    """Shell invocation that runs ``script`` with ``language``'s interpreter."""
    script_q = shlex.quote(script)
    arg_str = " ".join(shlex.quote(arg) for arg in args or [])
    templates = {
        "python": f"python3 {script_q} {arg_str}",
        "r": f"Rscript {script_q} {arg_str}",
        "matlab": f"matlab -batch \"run('{script}')\"",
        "bash": f"bash {script_q} {arg_str}",
        "node": f"node {script_q} {arg_str}",
    }
    return templates.get(language, f"{language} {script_q} {arg_str}").strip()


def install_command(package: str, language: str, environment: str | None = None) -> str:
    """Shell invocation that installs ``package`` for ``language``.

    Args:
        package: Package name
        language: python, r or node
        environment: Optional virtualenv directory to activate first (python only)
    """
    package_q = shlex.quote(package)
    prefix = f"source {shlex.quote(environment)}/bin/activate && " if environment else ""
    templates = {
        "python": f"{prefix}pip install {package_q}",
        "r": f"Rscript -e \"install.packages('{package}', repos='https://cran.r-project.org')\"",
        "node": f"npm install {package_q}",
    }
    if language not in templates:
        raise ToolInputError("install_package", message=f"Cannot install packages for language: {language}")
    return templates[language]


class ErrorKind(str, Enum):
    IMPORT = "import"
    TYPE = "type"
    ACCESS = "access"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorAnalysis:
    kind: ErrorKind
    causes: list[str] = field(default_factory=list)
    fixes: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    needs_context: bool = True


ERROR_ANALYSES = {
    ErrorKind.IMPORT: ErrorAnalysis(
        kind=ErrorKind.IMPORT,
        causes=["Package not installed", "Wrong environment activated", "Typo in import name"],
        fixes=["pip install <package>", "Check virtual environment", "Verify package name"],
        next_steps=["List installed packages", "Check Python path"],
        needs_context=False,
    ),
    ErrorKind.TYPE: ErrorAnalysis(
        kind=ErrorKind.TYPE,
        causes=["Wrong argument type", "Missing argument", "Incompatible operation"],
        fixes=["Check function signature", "Add type conversion", "Verify data types"],
        next_steps=["Print variable types", "Check function documentation"],
    ),
    ErrorKind.ACCESS: ErrorAnalysis(
        kind=ErrorKind.ACCESS,
        causes=["Missing key in dictionary", "Index out of range", "Column not found"],
        fixes=["Check available keys/columns", "Validate data structure", "Use .get() for dicts"],
        next_steps=["Print data structure", "Check data shape"],
    ),
    ErrorKind.UNKNOWN: ErrorAnalysis(
        kind=ErrorKind.UNKNOWN,
        causes=["Need more context to analyze"],
        fixes=["Provide full error message and code"],
        next_steps=["Share relevant code snippet", "Include full stack trace"],
    ),
}


def classify_error(text: str) -> ErrorAnalysis:
    """Classify error text. Rules are checked in order; the first match wins."""
    lower = text.lower()
    if "modulenotfounderror" in lower or "import" in lower:
        return ERROR_ANALYSES[ErrorKind.IMPORT]
    if "typeerror" in lower:
        return ERROR_ANALYSES[ErrorKind.TYPE]
    if "keyerror" in lower or "indexerror" in lower:
        return ERROR_ANALYSES[ErrorKind.ACCESS]
    return ERROR_ANALYSES[ErrorKind.UNKNOWN]


def suggest_approach(specification: str, language: str) -> list[str]:
    lower = specification.lower()
    approaches = []
    if "meta-analysis" in lower:
        approaches += ["Use metafor package for effect size calculations", "Implement forest plot with ggplot2"]
    if "machine learning" in lower or " ml " in f" {lower} ":
        approaches += [
            "Start with train/test split and cross-validation",
            "Consider SHAP/LIME for model interpretability",
        ]
    if language == "python":
        approaches += ["Use type hints and docstrings", "Consider pytest for testing"]
    elif language == "r":
        approaches += ["Follow tidyverse conventions", "Use roxygen2 for documentation"]
    return approaches or ["Implement step by step with clear documentation"]


class CoderWorker(BaseWorker):
    """Runs code in the isolated environment and helps debug and review it."""

    role = WorkerRole.CODER

    @property
    def capabilities(self) -> list[str]:
        return [
            "Run scripts in Python, R, MATLAB, bash or node",
            "Run shell commands in the isolated environment",
            "Install packages",
            "Classify errors and suggest fixes",
            "Suggest implementation approaches",
            "Code review checklists",
        ]

    async def handle(self, task: AgentTask) -> AgentResult:
        handlers = {
            "run_script": self._run_script,
            "run_command": self._run_command,
            "install_package": self._install_package,
            "debug": self._debug,
            "implement": self._implement,
            "review_code": self._review,
            "code": self._code,
        }
        handler = handlers.get(task.type)
        if handler is None:
            return AgentResult(success=False, error=f"Unknown task type: {task.type}")
        return await handler(task)

    async def _code(self, task: AgentTask) -> AgentResult:
        """Pick a concrete action from what the input carries."""
        if "script" in task.input:
            return await self._run_script(task)
        if "command" in task.input:
            return await self._run_command(task)
        if "error" in task.input:
            return await self._debug(task)
        return await self._implement(task)

    async def _execute(self, command: str, timeout: float | None = None) -> ExecuteResult:
        runtime = self.require_runtime()
        self.set_status(WorkerStatus.EXECUTING)
        self.notify(f"Running: {command}")
        try:
            return await runtime.execute(command, timeout=timeout)
        finally:
            self.set_status(WorkerStatus.THINKING)

    @staticmethod
    def _from_execution(result: ExecuteResult, **extra: object) -> AgentResult:
        return AgentResult(
            success=result.ok,
            output={"stdout": result.stdout, "stderr": result.stderr, "exit_code": result.exit_code, **extra},
            error=None if result.ok else (result.stderr or f"Exited with code {result.exit_code}"),
        )

    async def _run_script(self, task: AgentTask) -> AgentResult:
        script = task.input.get("script")
        if not script:
            raise ToolInputError("run_script", missing=["script"])
        language = task.input.get("language") or detect_language(script)
        result = await self._execute(run_command(script, language, task.input.get("args")), task.input.get("timeout"))
        return self._from_execution(result, language=language)

    async def _run_command(self, task: AgentTask) -> AgentResult:
        command = task.input.get("command")
        if not command:
            raise ToolInputError("run_command", missing=["command"])
        result = await self._execute(command, task.input.get("timeout"))
        return self._from_execution(result)

    async def _install_package(self, task: AgentTask) -> AgentResult:
        package = task.input.get("package")
        if not package:
            raise ToolInputError("install_package", missing=["package"])
        language = task.input.get("language", DEFAULT_LANGUAGE)
        result = await self._execute(install_command(package, language, task.input.get("environment")))
        return AgentResult(
            success=result.ok,
            output={"package": package, "language": language, "installed": result.ok, "output": result.stdout},
            error=None if result.ok else result.stderr,
        )

    async def _debug(self, task: AgentTask) -> AgentResult:
        error = task.input.get("error")
        if not error:
            raise ToolInputError("debug", missing=["error"])
        analysis = classify_error(error)
        self.logger.debug("error_classified", kind=analysis.kind.value)
        return AgentResult(
            success=True,
            output={
                "error_type": analysis.kind.value,
                "possible_causes": analysis.causes,
                "suggested_fixes": analysis.fixes,
                "needs_more_context": analysis.needs_context,
            },
            next_steps=list(analysis.next_steps),
        )

    async def _implement(self, task: AgentTask) -> AgentResult:
        specification = task.input.get("specification") or task.input.get("content", "")
        language = task.input.get("language") or detect_language(task.input.get("file_path", ""))
        return AgentResult(
            success=True,
            output={
                "language": language,
                "specification": specification,
                "status": "ready_for_implementation",
                "suggested_approach": suggest_approach(specification, language),
            },
            next_steps=[
                "Generate code based on specification",
                "Write to file if path provided",
                "Run tests if available",
            ],
        )

    async def _review(self, task: AgentTask) -> AgentResult:
        areas = task.input.get("focus_areas") or list(REVIEW_CHECKLISTS)
        return AgentResult(
            success=True,
            output={
                "review_areas": areas,
                "status": "review_ready",
                "checklist": {area: REVIEW_CHECKLISTS[area] for area in areas if area in REVIEW_CHECKLISTS},
            },
            next_steps=["Analyze code against checklist", "Provide specific recommendations"],
        )
