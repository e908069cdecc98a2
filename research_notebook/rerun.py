"""
RerunHandler: regenerate one cell in place with the user's comment.
"""

import logging

from research_notebook.cell import (
    Cell,
    CellKind,
    CellStatus,
    CodeMetadata,
    PlanStep,
)
from research_notebook.engine import CellTransitionEngine, TransitionContext
from research_notebook.exceptions import (
    CellNotFoundError,
    CollaboratorError,
    RerunNotSupportedError,
    TransitionCancelledError,
    TransitionError,
)
from research_notebook.utils import format_report

logger = logging.getLogger(__name__)


class RerunHandler:
    """
    Re-invokes the collaborator that produced a cell, with a user comment.

    The replacement keeps the original id and index; its content is new, so
    it is routed again.
    """

    def __init__(self, engine: CellTransitionEngine):
        self.engine = engine
        self._builders = {
            CellKind.INITIALIZATION: engine.build_initialization,
            CellKind.ABSTRACT: engine.build_abstract,
            CellKind.DATA_ASSESSMENT: engine.build_data_assessment,
            CellKind.DATA_COLLECTION: engine.build_data_collection,
            CellKind.ANALYSIS_PLAN: engine.build_analysis_plan,
            CellKind.WRITEUP: engine.build_writeup,
        }

    def supports(self, kind: CellKind) -> bool:
        return kind in self._builders or kind in (CellKind.CODE, CellKind.ANALYSIS_EXECUTION, CellKind.RESULT)

    def rerun(self, ctx: TransitionContext, cell: Cell, comment: str) -> Cell:
        """
        Regenerate ``cell`` with ``comment`` and replace it in the session.

        Raises:
            RerunNotSupportedError: For goal and progress log cells
            TransitionError: If the collaborator or the rebuild fails; the cell
                is marked error
        """
        if not self.supports(cell.kind):
            raise RerunNotSupportedError(cell.kind.value)

        logger.info("Rerunning %s cell %s with comment", cell.kind.value, cell.id)
        self._mark_active(ctx, cell.id)
        try:
            if cell.is_code:
                replacement = self._rerun_code(ctx, cell, comment)
            elif cell.kind == CellKind.RESULT:
                replacement = self._rerun_result(ctx, cell, comment)
            else:
                content, metadata = self._builders[cell.kind](ctx, cell.id, comment=comment)
                replacement = Cell(
                    id=cell.id,
                    kind=cell.kind,
                    content=content,
                    status=CellStatus.COMPLETED,
                    metadata=metadata,
                )
                ctx.runtime.replace_cell(cell.id, replacement, token=ctx.token)
        except TransitionCancelledError:
            raise
        except TransitionError as e:
            if e.cell_id == cell.id:
                raise
            raise self.engine.fail(ctx, cell.id, e) from e
        except CollaboratorError as e:
            raise self.engine.fail(ctx, cell.id, e) from e
        except Exception as e:
            logger.exception("Unexpected failure rerunning %s cell %s", cell.kind.value, cell.id)
            raise self.engine.fail(ctx, cell.id, e) from e

        if replacement.status == CellStatus.COMPLETED:
            self.engine.route_once(ctx, cell.id)
        return ctx.runtime.get_cell(cell.id)

    def _mark_active(self, ctx: TransitionContext, cell_id: str):
        def apply(c: Cell):
            c.status = CellStatus.ACTIVE
            c.error = None

        ctx.runtime.mutate_cell(cell_id, apply, token=ctx.token, persist=True, touch=False)

    def _rerun_code(self, ctx: TransitionContext, cell: Cell, comment: str) -> Cell:
        meta = cell.metadata
        step = PlanStep(
            title=meta.step_title,
            description=f"Current code:\n```python\n{cell.content}\n```",
        )
        code = self.engine.generate_code(
            ctx, cell.id, step, meta.step_order, meta.total_steps, comment=comment
        )
        replacement = Cell(
            id=cell.id,
            kind=cell.kind,
            content=code,
            status=CellStatus.PENDING,
            metadata=CodeMetadata(
                kind=cell.kind.value,
                step_order=meta.step_order,
                total_steps=meta.total_steps,
                step_title=meta.step_title,
            ),
        )
        ctx.runtime.replace_cell(cell.id, replacement, token=ctx.token)
        self.engine.run_code(ctx, replacement, code, touch=False)
        return ctx.runtime.get_cell(cell.id)

    def _rerun_result(self, ctx: TransitionContext, cell: Cell, comment: str) -> Cell:
        meta = cell.metadata
        code_cell = None
        if meta.code_cell_id:
            try:
                code_cell = ctx.runtime.get_cell(meta.code_cell_id)
            except CellNotFoundError:
                logger.warning("Code cell %s of result %s is missing", meta.code_cell_id, cell.id)
        current_code = meta.code or (code_cell.content if code_cell is not None else "")

        data = self.engine.ask(ctx, CellKind.RESULT, cell.id, comment=comment, code=current_code)
        code = self.engine.code_from(data)

        thread_id, report = self.engine.execute_tracked(ctx, cell.id, code)
        if code_cell is None:
            code_cell = Cell(
                kind=CellKind.CODE,
                metadata=CodeMetadata(step_order=meta.step_order, total_steps=meta.total_steps),
            )
        metadata = self.engine.result_metadata(code_cell, code, thread_id, report)
        if meta.code_cell_id is None:
            metadata.code_cell_id = None

        replacement = Cell(
            id=cell.id,
            kind=CellKind.RESULT,
            content=format_report(report),
            status=CellStatus.COMPLETED,
            metadata=metadata,
            requires_user_action=not report.success,
            can_proceed=report.success,
        )
        return ctx.runtime.replace_cell(cell.id, replacement, token=ctx.token)
