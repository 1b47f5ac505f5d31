from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Optional, Union
import asyncio
import logging
import time

from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from sqlmodel import Session, select

from formtester.core.config import get_settings
from formtester.models import TestRun
from formtester.models.test_run import COMPLETED, FAILED, RUNNING, SUCCESS
from formtester.schemas.form import FieldType, FormConfig, FormField
from formtester.services.screenshots import ScreenshotStore
from formtester.utils.time import utcnow

logger = logging.getLogger(__name__)

PageFactory = Callable[[], Any]

_TRUE_STRINGS = ("true", "on", "yes", "1", "checked")
_FALSE_STRINGS = ("false", "off", "no", "0", "unchecked", "")


class FieldProcessingError(Exception):
    """A single field could not be filled; the run carries on with the next one."""


@asynccontextmanager
async def chromium_page(settings=None) -> AsyncIterator[Any]:
    """Isolated headless Chromium session yielding a single page.

    The browser is closed on every exit path, including cancellation.
    """
    from playwright.async_api import async_playwright
    settings = settings or get_settings()
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=settings.BROWSER_HEADLESS,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        try:
            context = await browser.new_context(
                viewport={"width": settings.VIEWPORT_WIDTH, "height": settings.VIEWPORT_HEIGHT}
            )
            yield await context.new_page()
        finally:
            await browser.close()


@dataclass
class RunContext:
    """Mutable state of one run while the browser session is open."""
    test_id: str
    logs: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    screenshots: dict[str, str] = field(default_factory=dict)
    timings: dict[str, int] = field(default_factory=dict)

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.debug(f"[{self.test_id}] {message}")

    def error(self, message: str) -> None:
        self.errors.append(message)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        return None
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _attribute_value(value: Any) -> str:
    """Quotes a value for a CSS attribute selector."""
    text = _as_text(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def resolve_field_value(form_field: FormField, user_data: dict[str, Any]) -> Any:
    """User-supplied value, else the configured default.

    ``False`` and ``0`` are real values; only ``None`` and the empty string
    count as absent.
    """
    value = user_data.get(form_field.name)
    if value is None or value == "":
        value = form_field.default_value
    if value == "":
        return None
    return value


class FormTestRunner:
    """Drives one headless browser session through a configured form.

    A run is persisted in ``running`` before the browser starts, so crashed
    runs stay visible, and persisted again in exactly one terminal state
    when it ends. ``run`` never raises for browser-side failures: they are
    converted into a ``failed`` record.

    Attributes:
        db: Session used for both persists of the run record.
        screenshots: Blob store receiving PNG captures.
        page_factory: Zero-argument callable returning an async context
            manager that yields a Playwright-compatible page.
    """

    def __init__(
        self,
        db: Session,
        screenshots: ScreenshotStore,
        settings=None,
        page_factory: Optional[PageFactory] = None,
    ):
        self.db = db
        self.screenshots = screenshots
        self.settings = settings or get_settings()
        self.page_factory = page_factory or (lambda: chromium_page(self.settings))
        self._field_handlers = {
            FieldType.TEXT: self._fill,
            FieldType.EMAIL: self._fill,
            FieldType.PASSWORD: self._fill,
            FieldType.NUMBER: self._fill,
            FieldType.TEL: self._fill,
            FieldType.URL: self._fill,
            FieldType.TEXTAREA: self._fill,
            FieldType.SELECT: self._select,
            FieldType.CHECKBOX: self._checkbox,
            FieldType.RADIO: self._radio,
            FieldType.FILE: self._file,
        }

    async def run(
        self,
        url: str,
        form_config: Union[FormConfig, dict[str, Any]],
        user_data: Optional[dict[str, Any]],
        name: Optional[str] = None,
        description: Optional[str] = None,
        schedule_id: Optional[str] = None,
    ) -> TestRun:
        """Executes a form test end to end and returns the terminal record.

        Args:
            url: Page holding the form.
            form_config: Validated ``FormConfig`` or its stored camelCase dict.
            user_data: Field name to fill value.
            name: Display name, defaults to the url.
            description: Free text, defaults to "Form test for <url>".
            schedule_id: Set when the run was triggered by a schedule.

        Returns:
            The persisted TestRun in success, failed or completed.
        """
        snapshot = form_config.to_store() if isinstance(form_config, FormConfig) else dict(form_config or {})
        user_data = dict(user_data or {})

        test_run = TestRun(
            url=url,
            name=name or url,
            description=description or f"Form test for {url}",
            schedule_id=schedule_id,
            form_config=snapshot,
            user_data=user_data,
            status=RUNNING,
            logs=["Test started"],
        )
        self.db.add(test_run)
        self.db.commit()
        self.db.refresh(test_run)
        logger.info(f"Test {test_run.id} started for {url}")

        ctx = RunContext(test_id=test_run.id, logs=list(test_run.logs))
        started = time.monotonic()
        status = FAILED
        deadline = asyncio.timeout(self.settings.RUN_DEADLINE_SECONDS)
        try:
            async with deadline:
                config = form_config if isinstance(form_config, FormConfig) else FormConfig.model_validate(snapshot)
                async with self.page_factory() as page:
                    status = await self._drive(page, ctx, url, config, user_data)
        except Exception as e:
            if deadline.expired():
                message = f"Run exceeded its deadline of {self.settings.RUN_DEADLINE_SECONDS}s"
            else:
                message = str(e) or e.__class__.__name__
            status = FAILED
            ctx.error(f"Test execution error: {message}")
            ctx.log(f"Test failed with error: {message}")
            logger.error(f"Test {test_run.id} failed: {message}")
        finally:
            finished = utcnow()
            test_run.status = status
            test_run.logs = ctx.logs
            test_run.errors = ctx.errors
            test_run.screenshots = ctx.screenshots
            test_run.end_time = finished
            test_run.updated_at = finished
            test_run.metrics = {
                "duration": _elapsed_ms(started),
                "fieldsProcessed": len(snapshot.get("fields") or []),
                "errorsCount": len(ctx.errors),
                **ctx.timings,
            }
            self.db.add(test_run)
            self.db.commit()
            self.db.refresh(test_run)

        logger.info(f"Test {test_run.id} finished with status {test_run.status}")
        return test_run

    async def _drive(self, page: Any, ctx: RunContext, url: str, config: FormConfig, user_data: dict[str, Any]) -> str:
        page.on("console", lambda message: ctx.log(f"Console {message.type}: {message.text}"))
        page.on("pageerror", lambda error: ctx.error(f"Page error: {getattr(error, 'message', error)}"))

        ctx.log(f"Navigating to {url}")
        load_started = time.monotonic()
        await page.goto(url, wait_until="networkidle", timeout=self.settings.NAVIGATION_TIMEOUT_MS)
        ctx.timings["loadTime"] = _elapsed_ms(load_started)

        await self._capture(page, ctx, "initial", "initial")
        ctx.log("Took initial screenshot")

        for form_field in config.fields:
            await self._process_field(page, ctx, form_field, user_data)

        await self._capture(page, ctx, "preSubmit", "pre-submit")
        ctx.log("Took pre-submission screenshot")

        ctx.log("Submitting form")
        submit_started = time.monotonic()
        await page.click(config.submit_button_selector)

        if config.success_indicator:
            timeout = config.success_indicator.timeout or self.settings.SUCCESS_INDICATOR_TIMEOUT_MS
            try:
                await page.wait_for_selector(config.success_indicator.selector, timeout=timeout)
                ctx.log("Form submitted successfully")
                status = SUCCESS
            except PlaywrightTimeoutError as e:
                ctx.log(f"Timeout waiting for success indicator: {e}")
                ctx.error(f"Form submission success indicator not found: {e}")
                status = FAILED
        else:
            await page.wait_for_load_state("networkidle", timeout=self.settings.NETWORK_IDLE_TIMEOUT_MS)
            ctx.log("Form submitted and page reached network idle state")
            status = COMPLETED
        ctx.timings["submissionTime"] = _elapsed_ms(submit_started)

        await self._capture(page, ctx, "final", "final")
        ctx.log("Took final screenshot")
        return status

    async def _capture(self, page: Any, ctx: RunContext, slot: str, stage: str) -> str:
        data = await page.screenshot()
        key = await asyncio.to_thread(self.screenshots.save, ctx.test_id, stage, data)
        ctx.screenshots[slot] = key
        return key

    async def _process_field(self, page: Any, ctx: RunContext, form_field: FormField, user_data: dict[str, Any]) -> None:
        ctx.log(f"Processing field: {form_field.name}")
        try:
            value = resolve_field_value(form_field, user_data)
            if value is None:
                if form_field.required:
                    raise FieldProcessingError(f"Missing required field: {form_field.name}")
                ctx.log(f"Skipped optional field without value: {form_field.name}")
                return
            handler = self._field_handlers[form_field.type]
            await handler(page, ctx, form_field, value)
        except Exception as e:
            ctx.error(f"Error processing field {form_field.name}: {e}")
            ctx.log(f"Failed to process field: {form_field.name} - {e}")
            slot = f"error-{form_field.name}"
            try:
                await self._capture(page, ctx, slot, slot)
            except Exception as capture_error:
                logger.warning(f"Could not capture {slot} screenshot for test {ctx.test_id}: {capture_error}")

    async def _fill(self, page, ctx, form_field, value):
        text = _as_text(value)
        await page.fill(form_field.selector, text)
        ctx.log(f"Filled {form_field.type.value} field: {form_field.name} with value: {text}")

    async def _select(self, page, ctx, form_field, value):
        options = [str(v) for v in value] if isinstance(value, list) else str(value)
        await page.select_option(form_field.selector, options)
        ctx.log(f"Selected option in {form_field.name}: {_as_text(value)}")

    async def _checkbox(self, page, ctx, form_field, value):
        checked = _as_bool(value)
        if checked is None:
            raise FieldProcessingError(f"Cannot interpret {value!r} as a checkbox state")
        if checked:
            await page.check(form_field.selector)
            ctx.log(f"Checked checkbox: {form_field.name}")
        else:
            await page.uncheck(form_field.selector)
            ctx.log(f"Unchecked checkbox: {form_field.name}")

    async def _radio(self, page, ctx, form_field, value):
        await page.check(f"{form_field.selector}[value={_attribute_value(value)}]")
        ctx.log(f"Selected radio option: {_as_text(value)} for {form_field.name}")

    async def _file(self, page, ctx, form_field, value):
        raise FieldProcessingError(f"File upload is not supported: {form_field.name}")


def cleanup_interrupted_runs(db: Session, older_than: Optional[timedelta] = None) -> int:
    """Marks runs left in ``running`` by a crashed process as ``failed``.

    Args:
        db: Database session.
        older_than: Only touch runs started longer ago than this. None
            means every running record, which is right at process start.

    Returns:
        Number of runs closed.
    """
    query = select(TestRun).where(TestRun.status == RUNNING)
    if older_than is not None:
        query = query.where(TestRun.start_time < utcnow() - older_than)
    stale = db.exec(query).all()
    now = utcnow()
    for test_run in stale:
        test_run.status = FAILED
        test_run.errors = list(test_run.errors or []) + ["Test execution error: run was interrupted before completion"]
        test_run.logs = list(test_run.logs or []) + ["Test failed with error: run was interrupted before completion"]
        test_run.end_time = now
        test_run.updated_at = now
        duration = int((now - test_run.start_time).total_seconds() * 1000)
        test_run.metrics = {
            "duration": duration,
            "fieldsProcessed": len((test_run.form_config or {}).get("fields") or []),
            "errorsCount": len(test_run.errors),
        }
        db.add(test_run)
    if stale:
        db.commit()
        logger.warning(f"Marked {len(stale)} interrupted test run(s) as failed")
    return len(stale)
