"""External config optimizer: wire schemas, payload builders, and HTTP client.

The optimizer itself is a remote service. This module only shapes the
request from a session's analysis, bounds the call, and validates the
response.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from session_guard.config import OptimizerConfig
from session_guard.constants import PATTERN_CONFIDENCE_THRESHOLD
from session_guard.errors import OptimizerCallFailed
from session_guard.models import SessionAnalysis, SessionInfo

logger = logging.getLogger(__name__)

MAX_TASK_CONSTRAINTS = 3
MAX_ACCEPTANCE_CRITERIA = 3
ERROR_SNIPPET_CHARS = 100
DEDUPE_PREFIX_CHARS = 50


class _WireModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TaskSpec(_WireModel):
	id: str
	type: str = "feature"
	description: str
	acceptance_criteria: list[str] = []
	constraints: list[str] = []
	relevant_files: list[str] = []
	complexity: int = 5


class ProjectContext(_WireModel):
	project_path: str
	project_type: str = "unknown"
	language: str = "unknown"
	frameworks: list[str] = []
	package_manager: str = "unknown"
	has_ci: bool = Field(default=False, alias="hasCI")


class OptimizerOptions(_WireModel):
	max_iterations: int = 3
	target_score: float = 0.8
	min_improvement: float = 0.05
	timeout_seconds: int = 300


class OptimizerRequest(_WireModel):
	task: TaskSpec
	context: ProjectContext
	options: OptimizerOptions


class OptimizedConfig(_WireModel):
	id: str
	provider: str = ""
	instructions_file: str = ""
	system_prompt: str = ""


class OptimizerResponse(_WireModel):
	iterations: int = 0
	final_score: float
	initial_score: float | None = None
	suggestions_applied: int | None = None
	config: OptimizedConfig | None = None


def build_task_spec(session: SessionInfo, analysis: SessionAnalysis | None = None) -> TaskSpec:
	"""Describe the session's work as an abstract optimizer task.

	Recent errors become constraints and confident patterns become
	acceptance criteria.
	"""
	task = TaskSpec(
		id=f"task-{session.id}",
		description=f"Continue work in session: {session.name or session.id}",
	)
	if analysis is None:
		return task

	task.relevant_files = list(analysis.files_modified)
	for error in analysis.errors_encountered[:MAX_TASK_CONSTRAINTS]:
		task.constraints.append(f"Avoid error: {error[:ERROR_SNIPPET_CHARS]}")
	confident = [p for p in analysis.patterns if p.confidence >= PATTERN_CONFIDENCE_THRESHOLD]
	for pattern in confident[:MAX_ACCEPTANCE_CRITERIA]:
		task.acceptance_criteria.append(f"Follow pattern: {pattern.content}")
	return task


_LANGUAGE_MARKERS: tuple[tuple[str, str], ...] = (
	("pyproject.toml", "python"),
	("setup.py", "python"),
	("Cargo.toml", "rust"),
	("go.mod", "go"),
	("package.json", "javascript"),
)

_LOCKFILES: tuple[tuple[str, str], ...] = (
	("bun.lockb", "bun"),
	("bun.lock", "bun"),
	("pnpm-lock.yaml", "pnpm"),
	("yarn.lock", "yarn"),
	("package-lock.json", "npm"),
	("uv.lock", "uv"),
	("poetry.lock", "poetry"),
	("Cargo.lock", "cargo"),
	("go.sum", "go"),
)


def detect_project_context(project_path: str | None) -> ProjectContext:
	"""Infer language, package manager and CI presence from marker files."""
	if not project_path:
		return ProjectContext(project_path="/tmp")

	ctx = ProjectContext(project_path=project_path)
	root = Path(project_path)
	if not root.is_dir():
		return ctx

	for marker, language in _LANGUAGE_MARKERS:
		if (root / marker).exists():
			ctx.language = language
			break
	if ctx.language == "javascript" and (root / "tsconfig.json").exists():
		ctx.language = "typescript"
	if ctx.language != "unknown":
		ctx.project_type = ctx.language

	for lockfile, manager in _LOCKFILES:
		if (root / lockfile).exists():
			ctx.package_manager = manager
			break
	else:
		if ctx.language == "python":
			ctx.package_manager = "pip"

	if any(root.glob("next.config.*")):
		ctx.project_type = "nextjs"
		ctx.frameworks.extend(["next.js", "react"])

	ctx.has_ci = (root / ".github" / "workflows").is_dir() or (root / ".gitlab-ci.yml").exists()
	return ctx


def build_project_context(session: SessionInfo) -> ProjectContext:
	return detect_project_context(session.project_path)


def merge_config_content(existing: str, instructions: str, system_prompt: str) -> str:
	"""Append an optimizer section to existing config content.

	A subsection is skipped when its first 50 characters already appear in
	the existing content, so re-applying the same config doesn't duplicate it.
	"""
	lines: list[str] = []
	if existing.strip():
		lines.extend([existing.strip(), "", "---", ""])

	today = datetime.now(timezone.utc).date().isoformat()
	lines.extend(["## Meta-Agent Optimizations", "", f"> Auto-generated by meta-agent on {today}", ""])

	if system_prompt and system_prompt[:DEDUPE_PREFIX_CHARS] not in existing:
		lines.extend(["### System Context", "", system_prompt, ""])
	if instructions and instructions[:DEDUPE_PREFIX_CHARS] not in existing:
		lines.extend(["### Additional Instructions", "", instructions, ""])
	return "\n".join(lines)


class OptimizerClient:
	"""Calls the external optimizer over HTTP with a hard overall deadline."""

	def __init__(self, config: OptimizerConfig | None = None) -> None:
		self._config = config or OptimizerConfig()
		self._client: httpx.AsyncClient | None = None

	@property
	def deadline_seconds(self) -> float:
		return float(self._config.timeout_seconds + self._config.request_grace_seconds)

	def options(self) -> OptimizerOptions:
		return OptimizerOptions(
			max_iterations=self._config.max_iterations,
			target_score=self._config.target_score,
			min_improvement=self._config.min_improvement,
			timeout_seconds=self._config.timeout_seconds,
		)

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self.deadline_seconds)
		return self._client

	async def optimize(self, task: TaskSpec, context: ProjectContext) -> OptimizerResponse:
		"""Run one optimization. Raises OptimizerCallFailed on any failure."""
		request = OptimizerRequest(task=task, context=context, options=self.options())
		try:
			return await asyncio.wait_for(self._post(request), timeout=self.deadline_seconds)
		except asyncio.TimeoutError as exc:
			raise OptimizerCallFailed(
				f"Optimizer timed out after {self.deadline_seconds:.0f}s", ref=task.id,
			) from exc

	async def _post(self, request: OptimizerRequest) -> OptimizerResponse:
		client = await self._ensure_client()
		headers = {}
		if self._config.user_id:
			headers["X-User-Id"] = self._config.user_id
		try:
			resp = await client.post(
				self._config.endpoint,
				json=request.model_dump(by_alias=True),
				headers=headers,
			)
		except httpx.HTTPError as exc:
			raise OptimizerCallFailed(f"Optimizer request failed: {exc}", ref=request.task.id) from exc

		if resp.status_code >= 300:
			raise OptimizerCallFailed(
				f"Optimizer returned {resp.status_code}", ref=request.task.id,
			)
		try:
			return OptimizerResponse.model_validate(resp.json())
		except (ValueError, ValidationError) as exc:
			raise OptimizerCallFailed(f"Malformed optimizer response: {exc}", ref=request.task.id) from exc

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None
