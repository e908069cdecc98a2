"""
CellTransitionEngine: decides and produces the next cell of a research run.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel

from research_notebook.cell import (
    AbstractMetadata,
    AnalysisPlanMetadata,
    Cell,
    CellKind,
    CellStatus,
    CodeMetadata,
    DataAssessmentMetadata,
    DataCollectionMetadata,
    DataFile,
    InitializationMetadata,
    Library,
    PlanStep,
    Reference,
    ResultMetadata,
    Variable,
    Visualization,
    WriteupMetadata,
    KIND_LABELS,
)
from research_notebook.exceptions import (
    CollaboratorError,
    TransitionCancelledError,
    TransitionError,
)
from research_notebook.kernel import CodeExecutor, ExecutionReport
from research_notebook.llm import LanguageModel, LLMRequest, extract_fenced, parse_response
from research_notebook.prompts import build_prompt, build_research_context, format_data_files
from research_notebook.router import DataRouter
from research_notebook.runtime import CancellationToken, SessionRuntime
from research_notebook.stores import DataCatalog
from research_notebook.utils import (
    detect_imported_libraries,
    format_report,
    library_info,
    sanitize_name,
    truncate_text,
)

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = ("image/png", "image/svg+xml")
MAX_STREAMED_LOG_LINES = 50

PROGRESS_LINES = {
    CellKind.INITIALIZATION: [
        "Analyzing research goal...",
        "Searching for relevant references...",
        "Generating background summary and research questions...",
    ],
    CellKind.ABSTRACT: ["Drafting research abstract..."],
    CellKind.DATA_ASSESSMENT: [
        "Scanning project data files...",
        "Assessing data relevance and gaps...",
    ],
    CellKind.DATA_COLLECTION: [
        "Identifying required data...",
        "Preparing data collection plan...",
    ],
    CellKind.ANALYSIS_PLAN: [
        "Reviewing available data...",
        "Designing analysis steps...",
    ],
    CellKind.CODE: ["Preparing analysis code..."],
    CellKind.RESULT: ["Collecting execution output..."],
    CellKind.WRITEUP: [
        "Gathering execution results...",
        "Writing research report...",
    ],
}


@dataclass
class TransitionContext:
    """What a transition may touch: the session runtime and its cancellation token."""
    runtime: SessionRuntime
    token: Optional[CancellationToken] = None

    @property
    def goal(self) -> str:
        return self.runtime.session.goal

    @property
    def session_id(self) -> str:
        return self.runtime.session_id

    def check(self):
        if self.token is not None:
            self.token.raise_if_cancelled()


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _text_of(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return str(data.get("text", "")).strip()


def _models(model: type[BaseModel], items: Any, text_field: str) -> list:
    """Validate a list of dicts (or bare strings) into ``model`` instances."""
    result = []
    for item in _as_list(items):
        if isinstance(item, model):
            result.append(item)
        elif isinstance(item, dict):
            result.append(model.model_validate(item))
        elif item:
            result.append(model.model_validate({text_field: str(item)}))
    return result


class CellTransitionEngine:
    """
    State machine over cell kinds.

    ``next`` takes the cell the workflow is at, produces at most one new
    cell, appends it to the session and returns it. Produced cells are
    appended as active, streamed into, then completed; a collaborator
    failure marks the produced cell as error and raises TransitionError.
    """

    def __init__(
        self,
        llm: LanguageModel,
        executor: CodeExecutor,
        router: DataRouter,
        catalog: Optional[DataCatalog] = None,
        stream_delay_ms: Optional[int] = None,
    ):
        self.llm = llm
        self.executor = executor
        self.router = router
        self.catalog = catalog
        self.stream_delay_ms = stream_delay_ms

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def next(self, ctx: TransitionContext, cell: Cell) -> Optional[Cell]:
        """
        Produce the cell that follows ``cell``.

        Returns:
            The new cell, or None when ``cell`` is terminal, waits for the
            user, already has a successor, or is not in a state that can
            advance
        """
        if cell.kind in (CellKind.WRITEUP, CellKind.PROGRESS_LOG):
            return None
        if cell.requires_user_action and not cell.can_proceed:
            logger.info("Cell %s is waiting for user action", cell.id)
            return None
        if cell.is_code:
            if cell.status == CellStatus.ACTIVE:
                return None
        elif cell.status != CellStatus.COMPLETED:
            return None
        # code cells may be executed again from anywhere; other cells only
        # advance from the end of the session
        if not cell.is_code and not self._is_last(ctx, cell.id):
            logger.info("Cell %s already has a successor", cell.id)
            return None

        self.route_once(ctx, cell.id)

        if cell.kind == CellKind.GOAL:
            return self._initialize(ctx)
        if cell.kind == CellKind.INITIALIZATION:
            return self._abstract(ctx, cell)
        if cell.kind == CellKind.ABSTRACT:
            return self._assess_data(ctx)
        if cell.kind == CellKind.DATA_ASSESSMENT:
            if cell.metadata.existing_data_files:
                return self._plan_analysis(ctx)
            return self._collect_data(ctx)
        if cell.kind == CellKind.DATA_COLLECTION:
            return self._plan_analysis(ctx)
        if cell.kind == CellKind.ANALYSIS_PLAN:
            return self._code_step(ctx, cell, 0)
        if cell.is_code:
            return self.execute(ctx, cell)
        if cell.kind == CellKind.RESULT:
            meta = cell.metadata
            if meta.step_order < meta.total_steps - 1:
                plan = self._latest_plan(ctx)
                if plan is not None:
                    return self._code_step(ctx, plan, meta.step_order + 1)
            return self._writeup(ctx)
        return None

    def route_once(self, ctx: TransitionContext, cell_id: str):
        """Route a cell unless it was routed before; the flag is persisted."""
        cell = ctx.runtime.get_cell(cell_id)
        if cell.routed:
            return None
        result = self.router.route(cell)

        def mark(c: Cell):
            c.routed = True

        ctx.runtime.mutate_cell(cell_id, mark, token=ctx.token, persist=True, touch=False)
        return result

    # ------------------------------------------------------------------ #
    # Shared helpers
    # ------------------------------------------------------------------ #

    def ask(
        self,
        ctx: TransitionContext,
        step: CellKind,
        cell_id: str,
        comment: Optional[str] = None,
        **params,
    ) -> dict[str, Any]:
        """Call the language model for ``step`` with the context preceding ``cell_id``."""
        cells = ctx.runtime.cells_before(cell_id)
        context = build_research_context(ctx.goal, KIND_LABELS[step], cells, exclude_cell_id=cell_id)
        prompt = build_prompt(step, context, comment=comment, **params)
        request = LLMRequest(
            step=step.value, goal=ctx.goal, prompt=prompt, context=context,
            params={k: v for k, v in params.items() if isinstance(v, (str, int, float))},
        )
        logger.debug("LLM request for %s (context %d chars)", step.value, len(context))
        return parse_response(self.llm.call(request, token=ctx.token))

    def _open(self, ctx: TransitionContext, kind: CellKind, metadata: Optional[BaseModel] = None) -> str:
        cell = Cell(kind=kind, status=CellStatus.ACTIVE, metadata=metadata)
        ctx.runtime.append_cell(cell, token=ctx.token)
        return cell.id

    def stream(self, ctx: TransitionContext, cell_id: str, lines: list[str]):
        ctx.runtime.reporter.stream_lines(cell_id, lines, delay_ms=self.stream_delay_ms, token=ctx.token)
        ctx.check()

    def finish(
        self,
        ctx: TransitionContext,
        cell_id: str,
        content: str,
        metadata: Optional[BaseModel] = None,
        status: CellStatus = CellStatus.COMPLETED,
        **fields,
    ) -> Cell:
        """Commit the final content and metadata; streamed lines are kept."""
        def apply(cell: Cell):
            if metadata is not None:
                metadata.stream_lines = list(cell.metadata.stream_lines)
                cell.metadata = metadata
            cell.metadata.is_streaming = False
            cell.content = content
            cell.status = status
            cell.error = None
            for key, value in fields.items():
                setattr(cell, key, value)

        ctx.runtime.mutate_cell(cell_id, apply, token=ctx.token, persist=True)
        return ctx.runtime.get_cell(cell_id)

    def fail(self, ctx: TransitionContext, cell_id: str, error: Exception) -> TransitionError:
        """Mark a cell as error and build the error to raise."""
        message = getattr(error, "message", None) or str(error) or type(error).__name__

        def apply(cell: Cell):
            cell.status = CellStatus.ERROR
            cell.error = message
            cell.metadata.is_streaming = False

        try:
            ctx.runtime.mutate_cell(cell_id, apply, token=ctx.token, persist=True, touch=False)
        except TransitionCancelledError:
            logger.info("Transition for %s already abandoned; error not recorded", cell_id)
        logger.error("Transition failed at cell %s: %s", cell_id, message)
        return TransitionError(message, cell_id=cell_id)

    def produce(
        self,
        ctx: TransitionContext,
        kind: CellKind,
        build: Callable[[str], tuple[str, BaseModel]],
        metadata: Optional[BaseModel] = None,
        status: CellStatus = CellStatus.COMPLETED,
    ) -> Cell:
        """
        Append an active cell of ``kind``, stream progress, then complete it.

        ``build(cell_id)`` talks to the collaborators and returns the final
        (content, metadata) pair.
        """
        cell_id = self._open(ctx, kind, metadata)
        try:
            self.stream(ctx, cell_id, PROGRESS_LINES.get(kind, []))
            content, final_metadata = build(cell_id)
            cell = self.finish(ctx, cell_id, content, final_metadata, status=status)
        except TransitionCancelledError:
            raise
        except (CollaboratorError, TransitionError) as e:
            raise self.fail(ctx, cell_id, e) from e
        except Exception as e:
            logger.exception("Unexpected failure producing %s cell", kind.value)
            raise self.fail(ctx, cell_id, e) from e

        if status == CellStatus.COMPLETED:
            self.route_once(ctx, cell.id)
        return ctx.runtime.get_cell(cell.id)

    def _data_files(self) -> list[DataFile]:
        if self.catalog is None:
            return []
        try:
            files = self.catalog.list_data_files()
        except Exception as e:
            logger.warning("Could not list data files: %s", e)
            return []
        return [
            DataFile(
                filename=f.get("filename", "unknown"),
                file_type=f.get("file_type", "data"),
                description=f.get("description", ""),
                columns=list(f.get("columns") or []),
            )
            for f in files
        ]

    def _is_last(self, ctx: TransitionContext, cell_id: str) -> bool:
        with ctx.runtime.lock:
            last = ctx.runtime.session.last_cell()
        return last is not None and last.id == cell_id

    def _latest_plan(self, ctx: TransitionContext) -> Optional[Cell]:
        plans = [c for c in ctx.runtime.all_cells() if c.kind == CellKind.ANALYSIS_PLAN]
        return plans[-1] if plans else None

    # ------------------------------------------------------------------ #
    # Producers, one per target kind
    # ------------------------------------------------------------------ #

    def build_initialization(self, ctx: TransitionContext, cell_id: str, comment: Optional[str] = None):
        data = self.ask(ctx, CellKind.INITIALIZATION, cell_id, comment=comment)
        metadata = InitializationMetadata(
            goal=ctx.goal,
            references=_models(Reference, data.get("references"), "title"),
            questions=[str(q) for q in _as_list(data.get("questions"))],
            background_summary=data.get("background_summary"),
        )
        content = _text_of(data, "text", "initialization")
        if not content:
            content = metadata.background_summary or f"Research initialized for: {ctx.goal}"
        return content, metadata

    def _initialize(self, ctx: TransitionContext) -> Cell:
        return self.produce(
            ctx, CellKind.INITIALIZATION,
            lambda cell_id: self.build_initialization(ctx, cell_id),
            metadata=InitializationMetadata(goal=ctx.goal),
        )

    def build_abstract(self, ctx: TransitionContext, cell_id: str, comment: Optional[str] = None):
        data = self.ask(ctx, CellKind.ABSTRACT, cell_id, comment=comment)
        content = _text_of(data, "abstract")
        summary = data.get("background_summary")
        if not summary:
            inits = [c for c in ctx.runtime.cells_before(cell_id) if c.kind == CellKind.INITIALIZATION]
            summary = inits[-1].metadata.background_summary if inits else None
        return content, AbstractMetadata(background_summary=summary or "")

    def _abstract(self, ctx: TransitionContext, cell: Cell) -> Cell:
        return self.produce(ctx, CellKind.ABSTRACT, lambda cell_id: self.build_abstract(ctx, cell_id))

    def build_data_assessment(self, ctx: TransitionContext, cell_id: str, comment: Optional[str] = None):
        files = self._data_files()
        data = self.ask(
            ctx, CellKind.DATA_ASSESSMENT, cell_id, comment=comment,
            data_files=format_data_files(f.model_dump() for f in files),
        )
        assessment = _text_of(data, "assessment")
        metadata = DataAssessmentMetadata(goal=ctx.goal, existing_data_files=files, assessment=assessment)
        return assessment, metadata

    def _assess_data(self, ctx: TransitionContext) -> Cell:
        return self.produce(
            ctx, CellKind.DATA_ASSESSMENT,
            lambda cell_id: self.build_data_assessment(ctx, cell_id),
            metadata=DataAssessmentMetadata(goal=ctx.goal),
        )

    def build_data_collection(self, ctx: TransitionContext, cell_id: str, comment: Optional[str] = None):
        data = self.ask(ctx, CellKind.DATA_COLLECTION, cell_id, comment=comment)
        plan = _text_of(data, "collection_plan")
        metadata = DataCollectionMetadata(
            goal=ctx.goal,
            data_needed=str(data.get("data_needed") or ""),
            collection_plan=plan,
            data_files=_models(DataFile, data.get("data_files"), "content"),
        )
        return plan, metadata

    def _collect_data(self, ctx: TransitionContext) -> Cell:
        return self.produce(
            ctx, CellKind.DATA_COLLECTION,
            lambda cell_id: self.build_data_collection(ctx, cell_id),
            metadata=DataCollectionMetadata(goal=ctx.goal),
        )

    def build_analysis_plan(self, ctx: TransitionContext, cell_id: str, comment: Optional[str] = None):
        files = self._data_files()
        data = self.ask(
            ctx, CellKind.ANALYSIS_PLAN, cell_id, comment=comment,
            data_files=format_data_files(f.model_dump() for f in files),
        )
        plan = _text_of(data, "plan")
        steps = _models(PlanStep, data.get("steps"), "title")
        if not steps:
            steps = [PlanStep(title="Run analysis", description=plan)]
        metadata = AnalysisPlanMetadata(goal=ctx.goal, plan=plan, steps=steps, available_data_files=files)
        return plan, metadata

    def _plan_analysis(self, ctx: TransitionContext) -> Cell:
        return self.produce(
            ctx, CellKind.ANALYSIS_PLAN,
            lambda cell_id: self.build_analysis_plan(ctx, cell_id),
            metadata=AnalysisPlanMetadata(goal=ctx.goal),
        )

    def generate_code(
        self,
        ctx: TransitionContext,
        cell_id: str,
        step: PlanStep,
        step_order: int,
        total_steps: int,
        comment: Optional[str] = None,
    ) -> str:
        """Code for a plan step: the plan's own code, else asked from the model."""
        if step.code and not comment:
            return step.code.strip()
        data = self.ask(
            ctx, CellKind.ANALYSIS_EXECUTION, cell_id, comment=comment,
            step_number=step_order + 1, total_steps=total_steps,
            step_title=step.title, step_description=step.description,
        )
        return self.code_from(data)

    @staticmethod
    def code_from(data: dict[str, Any]) -> str:
        code = data.get("code")
        if isinstance(code, str) and code.strip():
            return code.strip()
        text = str(data.get("text", ""))
        fenced = extract_fenced(text, ("python", "py", ""))
        if fenced:
            return fenced
        if not text.strip():
            raise CollaboratorError("Language model returned no code", collaborator="llm")
        return text.strip()

    def _code_step(self, ctx: TransitionContext, plan: Cell, step_order: int) -> Cell:
        steps = plan.metadata.steps or [PlanStep(title="Run analysis", description=plan.metadata.plan or "")]
        step = steps[min(step_order, len(steps) - 1)]
        total = len(steps)

        def build(cell_id: str):
            code = self.generate_code(ctx, cell_id, step, step_order, total)
            return code, CodeMetadata(step_order=step_order, total_steps=total, step_title=step.title)

        # a code cell is complete once written; it waits as pending for execution
        return self.produce(
            ctx, CellKind.CODE, build,
            metadata=CodeMetadata(step_order=step_order, total_steps=total, step_title=step.title),
            status=CellStatus.PENDING,
        )

    # ------------------------------------------------------------------ #
    # Code execution
    # ------------------------------------------------------------------ #

    def execute_tracked(
        self,
        ctx: TransitionContext,
        cell_id: str,
        code: str,
        on_start: Optional[Callable[[str], None]] = None,
    ) -> tuple[str, ExecutionReport]:
        """
        Run ``code`` in a fresh execution thread tracked against ``cell_id``.

        A report with ``success=False`` (the code raised) completes the
        thread as error; an executor that raises is a collaborator failure.

        Raises:
            TransitionError: If a thread for the cell is already running
            CollaboratorError: If the executor itself failed
        """
        tracker = ctx.runtime.tracker
        thread_id = tracker.create(cell_id, total_steps=1)
        if thread_id is None:
            raise TransitionError(f"Execution already running for cell {cell_id}", cell_id=cell_id)
        if on_start is not None:
            on_start(thread_id)

        try:
            report = self.executor.execute(code, ctx.session_id)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            with ctx.runtime.lock:
                if ctx.token is None or not ctx.token.cancelled:
                    tracker.complete(thread_id, [], error=error)
            raise CollaboratorError(error, collaborator="executor", original_error=e) from e

        with ctx.runtime.lock:
            ctx.check()
            tracker.update(thread_id, progress={"current_step": 1})
            tracker.complete(thread_id, [report.to_dict()], error=report.error)
        return thread_id, report

    def run_code(
        self,
        ctx: TransitionContext,
        cell: Cell,
        code: str,
        touch: bool = True,
    ) -> tuple[str, ExecutionReport]:
        """
        Run a code cell. The cell is active while running, then completed,
        or error when the code raised. Returns (thread_id, report).

        ``touch=False`` keeps the cell's timestamp, for cells that already
        have successors.
        """
        def start(thread_id: str):
            def apply(c: Cell):
                c.status = CellStatus.ACTIVE
                c.content = code
                c.error = None
                c.metadata.thread_id = thread_id

            ctx.runtime.mutate_cell(cell.id, apply, token=ctx.token, persist=True, touch=touch)

        try:
            thread_id, report = self.execute_tracked(ctx, cell.id, code, on_start=start)
        except CollaboratorError as e:
            raise self.fail(ctx, cell.id, e) from e

        def done(c: Cell):
            c.status = CellStatus.COMPLETED if report.success else CellStatus.ERROR
            c.error = report.error
            c.metadata.last_report = report.to_dict()

        ctx.runtime.mutate_cell(cell.id, done, token=ctx.token, persist=True, touch=touch)
        return thread_id, report

    def result_metadata(
        self,
        code_cell: Cell,
        code: str,
        thread_id: str,
        report: ExecutionReport,
    ) -> ResultMetadata:
        """Execution report plus the variables, libraries and figures to route."""
        step_title = getattr(code_cell.metadata, "step_title", "analysis")
        visualizations = []
        for output in report.outputs:
            data = output.get("data") or {}
            for mime in IMAGE_MIME_TYPES:
                if mime in data:
                    visualizations.append(Visualization(
                        name=f"{sanitize_name(step_title)}_figure_{len(visualizations) + 1}",
                        type=mime,
                        content=str(data[mime]),
                        code=code,
                    ))
                    break

        return ResultMetadata(
            execution_results=[report.to_dict()],
            step_order=code_cell.metadata.step_order,
            total_steps=code_cell.metadata.total_steps,
            thread_id=thread_id,
            code_cell_id=code_cell.id,
            code=code,
            variables=[
                Variable(
                    name=v["name"],
                    type=v.get("type", "unknown"),
                    value=None if v.get("value") is None else str(v["value"]),
                    metadata={"shape": v["shape"]} if v.get("shape") is not None else {},
                )
                for v in report.variables
            ],
            libraries=[Library(**library_info(name)) for name in detect_imported_libraries(code)],
            visualizations=visualizations,
        )

    def execute(self, ctx: TransitionContext, cell: Cell) -> Optional[Cell]:
        """Execute a code cell and append its result cell."""
        code = cell.content
        thread_id, report = self.run_code(ctx, cell, code, touch=self._is_last(ctx, cell.id))

        result_cell = Cell(
            kind=CellKind.RESULT,
            status=CellStatus.ACTIVE,
            metadata=ResultMetadata(
                step_order=cell.metadata.step_order,
                total_steps=cell.metadata.total_steps,
                thread_id=thread_id,
                code_cell_id=cell.id,
            ),
        )
        ctx.runtime.append_cell(result_cell, token=ctx.token)
        try:
            lines = [truncate_text(line, 200) for line in report.logs[:MAX_STREAMED_LOG_LINES]]
            self.stream(ctx, result_cell.id, PROGRESS_LINES[CellKind.RESULT] + lines)

            # a failed run blocks auto-advance until the user reruns the step
            finished = self.finish(
                ctx, result_cell.id, format_report(report),
                self.result_metadata(cell, code, thread_id, report),
                requires_user_action=not report.success,
                can_proceed=report.success,
            )
        except TransitionCancelledError:
            raise
        except (CollaboratorError, TransitionError) as e:
            raise self.fail(ctx, result_cell.id, e) from e
        except Exception as e:
            logger.exception("Unexpected failure producing result cell for %s", cell.id)
            raise self.fail(ctx, result_cell.id, e) from e

        self.route_once(ctx, finished.id)
        return ctx.runtime.get_cell(finished.id)

    # ------------------------------------------------------------------ #
    # Write-up
    # ------------------------------------------------------------------ #

    def build_writeup(self, ctx: TransitionContext, cell_id: str, comment: Optional[str] = None):
        results = []
        for c in ctx.runtime.cells_before(cell_id):
            if c.kind == CellKind.RESULT:
                results.extend(c.metadata.execution_results)
        summary = "\n\n".join(
            f"Result {i}: {'success' if r.get('success') else 'error: ' + str(r.get('error'))}\n"
            f"{truncate_text(r.get('stdout', ''), 2000)}"
            for i, r in enumerate(results, start=1)
        ) or "(no execution results)"
        data = self.ask(ctx, CellKind.WRITEUP, cell_id, comment=comment, execution_results=summary)
        return _text_of(data, "writeup", "report"), WriteupMetadata(execution_result_count=len(results))

    def _writeup(self, ctx: TransitionContext) -> Cell:
        return self.produce(ctx, CellKind.WRITEUP, lambda cell_id: self.build_writeup(ctx, cell_id))
