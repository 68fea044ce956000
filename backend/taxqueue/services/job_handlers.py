"""Job handler registry and the built-in handlers for each job type.

A handler is `async def handler(ctx: JobContext) -> dict`. The returned
dict becomes `data.output`. Handlers should call `ctx.check_cancelled()`
between steps; the worker never kills a running handler.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from taxqueue.models.base import utcnow
from taxqueue.services.errors import JobCancelledError, NonRetryableJobError, UnsupportedJobTypeError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[..., Awaitable[None]]
LogCallback = Callable[[str, str, dict | None], Awaitable[None]]


@dataclass
class JobContext:
    """What a handler sees of its job for one attempt."""

    job_id: str
    session_id: str
    job_type: str
    input: dict[str, Any]
    parameters: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    step_delay: float = 0.0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    progress_callback: ProgressCallback | None = None
    log_callback: LogCallback | None = None

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Checkpoint: raise if a cancel was requested."""
        if self.cancel_event.is_set():
            raise JobCancelledError(f"Job {self.job_id} was cancelled")

    async def report_progress(
        self,
        percentage: float,
        current_step: str = "",
        total_steps: int | None = None,
        completed_steps: int | None = None,
    ) -> None:
        if self.progress_callback:
            await self.progress_callback(
                percentage=percentage,
                current_step=current_step,
                total_steps=total_steps,
                completed_steps=completed_steps,
            )

    async def log(self, level: str, message: str, data: dict | None = None) -> None:
        if self.log_callback:
            await self.log_callback(level, message, data)


JobHandler = Callable[[JobContext], Awaitable[dict]]


class JobHandlerRegistry:
    """job_type -> handler, resolved once when the worker starts."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str):
        """Decorator to register a job handler function."""
        def decorator(func: JobHandler) -> JobHandler:
            self._handlers[job_type] = func
            return func
        return decorator

    def add(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnsupportedJobTypeError(job_type)
        return handler

    def copy(self) -> "JobHandlerRegistry":
        clone = JobHandlerRegistry()
        clone._handlers = dict(self._handlers)
        return clone

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)


default_registry = JobHandlerRegistry()


async def run_steps(
    ctx: JobContext,
    opening: tuple[str, float],
    steps: list[tuple[str, float]],
) -> None:
    """Walk a fixed list of (step name, percentage) checkpoints."""
    total = len(steps)
    step_name, percentage = opening
    await ctx.report_progress(percentage, step_name, total_steps=total, completed_steps=0)
    for index, (step_name, percentage) in enumerate(steps, start=1):
        ctx.check_cancelled()
        if ctx.step_delay:
            await asyncio.sleep(ctx.step_delay)
        await ctx.report_progress(percentage, step_name, total_steps=total, completed_steps=index)
        await ctx.log("info", f"Step completed: {step_name}", None)


def _require(ctx: JobContext, key: str) -> Any:
    value = ctx.input.get(key)
    if value in (None, ""):
        raise NonRetryableJobError(f"'{key}' is required for {ctx.job_type} jobs")
    return value


def _sum_amounts(values: Any) -> float:
    """Accepts a number, a list of numbers/{amount} dicts, or a name -> amount dict."""
    if isinstance(values, dict):
        values = list(values.values())
    if not isinstance(values, (list, tuple)):
        return float(values or 0)
    total = 0.0
    for item in values:
        if isinstance(item, dict):
            item = item.get("amount", 0)
        total += float(item or 0)
    return total


# ── Built-in handlers ────────────────────────────────────────────

@default_registry.register("document_processing")
async def handle_document_processing(ctx: JobContext) -> dict:
    """OCR/extraction pipeline for an uploaded document."""
    document_id = _require(ctx, "documentId")
    await run_steps(
        ctx,
        ("Starting document processing", 10),
        [
            ("Extracting text", 30),
            ("Analyzing content", 50),
            ("Extracting entities", 70),
            ("Validating data", 90),
            ("Finalizing results", 100),
        ],
    )
    return {
        "documentId": document_id,
        "processed": True,
        "documentType": ctx.input.get("documentType", "other"),
        "pages": int(ctx.input.get("pages", 1)),
    }


@default_registry.register("tax_calculation")
async def handle_tax_calculation(ctx: JobContext) -> dict:
    """Compute income, deductions and liability from the submitted form data."""
    form_data = ctx.input.get("formData") or {}
    await run_steps(
        ctx,
        ("Validating form data", 10),
        [
            ("Calculating income", 35),
            ("Calculating deductions", 65),
            ("Calculating tax liability", 85),
            ("Generating results", 100),
        ],
    )
    total_income = _sum_amounts(form_data.get("income", form_data.get("totalIncome", 0)))
    if "deductions" in form_data:
        total_deductions = _sum_amounts(form_data["deductions"])
    else:
        total_deductions = float(form_data.get("standardDeduction", 12000))
    taxable_income = max(0.0, total_income - total_deductions)
    rate = float(form_data.get("taxRate", 0.12))
    tax_liability = round(taxable_income * rate, 2)
    withheld = _sum_amounts(form_data.get("withholding", 0))
    return {
        "calculations": {
            "totalIncome": round(total_income, 2),
            "totalDeductions": round(total_deductions, 2),
            "taxableIncome": round(taxable_income, 2),
            "taxLiability": tax_liability,
            "withheld": round(withheld, 2),
            "refund": round(max(0.0, withheld - tax_liability), 2),
            "amountDue": round(max(0.0, tax_liability - withheld), 2),
        },
        "isValid": total_income >= 0,
    }


@default_registry.register("form_generation")
async def handle_form_generation(ctx: JobContext) -> dict:
    form_id = _require(ctx, "formId")
    await run_steps(
        ctx,
        ("Loading form data", 20),
        [
            ("Validating fields", 60),
            ("Checking business rules", 85),
            ("Generating validation report", 100),
        ],
    )
    fields = ctx.input.get("fields") or {}
    missing = [name for name, value in fields.items() if value in (None, "")]
    completeness = 100 if not fields else round(100 * (len(fields) - len(missing)) / len(fields))
    return {
        "formId": form_id,
        "isValid": not missing,
        "errors": [f"Missing value for {name}" for name in missing],
        "completeness": completeness,
    }


@default_registry.register("data_validation")
async def handle_data_validation(ctx: JobContext) -> dict:
    await run_steps(
        ctx,
        ("Gathering data", 10),
        [
            ("Checking required fields", 40),
            ("Cross-checking amounts", 70),
            ("Compiling findings", 90),
            ("Finalizing validation", 100),
        ],
    )
    records = ctx.input.get("records") or []
    invalid = [i for i, record in enumerate(records) if not isinstance(record, dict) or not record]
    return {
        "sessionId": ctx.session_id,
        "recordCount": len(records),
        "invalidRecords": invalid,
        "isValid": not invalid,
    }


@default_registry.register("report_generation")
async def handle_report_generation(ctx: JobContext) -> dict:
    report_format = ctx.input.get("format", "pdf")
    await run_steps(
        ctx,
        ("Collecting report data", 25),
        [
            ("Rendering template", 60),
            ("Writing report", 85),
            ("Finalizing report", 100),
        ],
    )
    generated_at = utcnow()
    return {
        "sessionId": ctx.session_id,
        "format": report_format,
        "reportUrl": f"/reports/{ctx.session_id}_{int(generated_at.timestamp())}.{report_format}",
        "generatedAt": generated_at.isoformat(),
    }


@default_registry.register("notification")
async def handle_notification(ctx: JobContext) -> dict:
    recipient = _require(ctx, "recipient")
    await run_steps(
        ctx,
        ("Preparing notification", 10),
        [
            ("Sending notification", 50),
            ("Confirming delivery", 80),
            ("Logging result", 100),
        ],
    )
    return {
        "recipient": recipient,
        "subject": ctx.input.get("subject"),
        "template": ctx.input.get("template"),
        "sentAt": utcnow().isoformat(),
        "status": "sent",
    }


@default_registry.register("cleanup")
async def handle_cleanup(ctx: JobContext) -> dict:
    await run_steps(
        ctx,
        ("Scanning for old data", 10),
        [
            ("Cleaning up files", 50),
            ("Updating database", 80),
            ("Finalizing cleanup", 100),
        ],
    )
    return {
        "type": ctx.input.get("type", "temp_files"),
        "olderThanDays": int(ctx.input.get("olderThanDays", 7)),
        "completedAt": utcnow().isoformat(),
    }


@default_registry.register("backup")
async def handle_backup(ctx: JobContext) -> dict:
    target = ctx.input.get("target", "default")
    await run_steps(
        ctx,
        ("Preparing backup", 10),
        [
            ("Creating backup archive", 30),
            ("Compressing data", 60),
            ("Uploading to storage", 90),
            ("Verifying backup", 100),
        ],
    )
    created_at = utcnow()
    return {
        "type": ctx.input.get("type", "full"),
        "target": target,
        "backupId": f"backup_{int(created_at.timestamp() * 1000)}",
        "createdAt": created_at.isoformat(),
    }


@default_registry.register("other")
async def handle_other(ctx: JobContext) -> dict:
    await run_steps(
        ctx,
        ("Processing operation", 10),
        [
            ("Executing operation", 70),
            ("Finalizing", 100),
        ],
    )
    return {
        "operation": ctx.input.get("operation"),
        "result": "completed",
        "processedAt": utcnow().isoformat(),
    }
