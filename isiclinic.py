#!/usr/bin/env python3
"""
IsiClinic automation with Playwright.

An ``IsiClinicSession`` owns one browser for the duration of one job: it logs
in, opens the new-patient form, fills the fields present in the submission and
saves diagnostic screenshots. The browser is always closed when the session
ends, whether the job succeeded or not.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from config import Settings
from exceptions import AuthenticationError, FormNotReadyError, NavigationError, ScreenshotError

logger = logging.getLogger(__name__)

NEW_PATIENT_URL = "https://app.esiclinic.com/pacientes.php?autoclose=1&new=1"

PAGE_LOAD_TIMEOUT_MS = 60000
LOGIN_DETECT_TIMEOUT_MS = 30000
NETWORK_IDLE_TIMEOUT_MS = 30000
FORM_READY_TIMEOUT_MS = 30000
TEST_FORM_READY_TIMEOUT_MS = 20000

USER_INPUT = "#esi_user"
PASSWORD_INPUT = "#esi_pass"
SUBMIT_BUTTON = 'button[type="submit"]'
LOGGED_IN_MARKER = 'img[src*="logo_generico"]'
LOGIN_FORM_MARKER = 'input[name="esi_user"]'
FORM_ANCHOR = "#Tnombre"

# (payload key, selector, action) in the order the fields appear on the form
PATIENT_FORM_FIELDS = (
    ("nombre", "#Tnombre", "fill"),
    ("apellidos", "#Tapellidos", "fill"),
    ("telefono", "#Tmovil", "fill"),
    ("email", "#Temail", "fill"),
    ("comentario", "#Tcomentario", "fill"),
    ("tratamiento", "#Ttratamiento", "fill"),
    ("fuente", "#Tfuente", "fill"),
    ("dni", "#TCIF", "fill"),
    ("fdn", "#Tfechadenacimiento", "fill"),
    ("sexo", "#Tsexo", "select"),
    ("direccion", "#Tdireccion", "fill"),
    ("cp", "#Tcp", "fill"),
    ("poblacion", "#Tpoblacion", "fill"),
    ("provincia", "#Tprovincia", "fill"),
    ("pais", "#Tpais", "fill"),
)


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    SUBMITTED = "submitted-credentials"
    AUTHENTICATED = "authenticated"
    AUTH_FAILED = "auth-failed"


def screenshot_filename(prefix: str, now: Optional[datetime] = None) -> str:
    """Build ``<prefix>_<YYYY-MM-DDTHH-MM-SS>.png``."""
    now = now or datetime.now(timezone.utc)
    return f"{prefix}_{now.strftime('%Y-%m-%dT%H-%M-%S')}.png"


class IsiClinicSession:
    """
    One browser-driven interaction with IsiClinic.

    Use as an async context manager; the browser is launched on entry and
    closed on exit. Passing ``page`` drives an already-open page instead, and
    that page is left open on exit.

    Args:
        settings: Credentials, login URL, headless flag and screenshot directory
        page: Optional Playwright page to drive instead of launching a browser
    """

    def __init__(self, settings: Settings, page=None):
        self.settings = settings
        self.page = page
        self.browser = None
        self.auth_state = AuthState.ANONYMOUS
        self._playwright = None
        self._owns_browser = page is None

    @property
    def page_context(self) -> Optional[str]:
        """URL of the page currently loaded, if any."""
        return self.page.url if self.page is not None else None

    async def __aenter__(self) -> "IsiClinicSession":
        if self._owns_browser:
            self._playwright = await async_playwright().start()
            try:
                self.browser = await self._playwright.chromium.launch(headless=self.settings.headless)
                self.page = await self.browser.new_page()
            except BaseException:
                await self.close()
                raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the browser and stop Playwright if this session launched them."""
        if not self._owns_browser:
            return
        try:
            if self.browser is not None:
                await self.browser.close()
        finally:
            self.browser = None
            self.page = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def take_screenshot(self, prefix: str) -> Optional[Path]:
        """
        Save a full-page screenshot under the screenshot directory.

        Never raises: a failed capture is logged so it cannot hide the error
        that triggered it.

        Returns:
            Path of the saved file, or None if the capture failed
        """
        try:
            if self.page is None:
                raise ScreenshotError("no page is open")
            screenshot_dir = Path(self.settings.screenshot_dir)
            screenshot_dir.mkdir(parents=True, exist_ok=True)
            screenshot_path = screenshot_dir / screenshot_filename(prefix)
            await self.page.screenshot(path=str(screenshot_path), full_page=True)
        except Exception as e:
            error = e if isinstance(e, ScreenshotError) else ScreenshotError(str(e))
            logger.warning("⚠️  Could not take %s screenshot: %s", prefix, error)
            return None

        logger.info("📸 Screenshot saved to %s", screenshot_path)
        return screenshot_path

    async def login(self) -> AuthState:
        """
        Log in to IsiClinic.

        Raises:
            NavigationError: the login page or post-login network did not settle in time
            AuthenticationError: the credentials were rejected or no outcome was detected
        """
        try:
            await self.page.goto(
                self.settings.isi_url,
                wait_until="domcontentloaded",
                timeout=PAGE_LOAD_TIMEOUT_MS,
            )
        except PlaywrightError as e:
            raise NavigationError(f"Could not load login page {self.settings.isi_url}: {e}") from e

        await self.page.fill(USER_INPUT, self.settings.isi_user)
        await self.page.fill(PASSWORD_INPUT, self.settings.isi_pass)
        await self.page.click(SUBMIT_BUTTON)
        self.auth_state = AuthState.SUBMITTED

        self.auth_state = await self._detect_login_outcome()
        if self.auth_state is AuthState.AUTH_FAILED:
            raise AuthenticationError("Login failed: the login form is still visible.")

        # Let post-login scripts and AJAX calls finish
        try:
            await self.page.wait_for_load_state("networkidle", timeout=NETWORK_IDLE_TIMEOUT_MS)
        except PlaywrightError as e:
            raise NavigationError(f"Network did not settle after login: {e}") from e

        logger.info("✅ IsiClinic login OK.")
        return self.auth_state

    async def _detect_login_outcome(self) -> AuthState:
        """
        Race the logged-in marker against the login form.

        The first detector to find its element decides the state; the other
        one is cancelled. If both time out the login is reported as failed.
        """
        detectors = {
            asyncio.create_task(self.page.wait_for_selector(
                LOGGED_IN_MARKER, state="visible", timeout=LOGIN_DETECT_TIMEOUT_MS,
            )): AuthState.AUTHENTICATED,
            asyncio.create_task(self.page.wait_for_selector(
                LOGIN_FORM_MARKER, state="visible", timeout=LOGIN_DETECT_TIMEOUT_MS,
            )): AuthState.AUTH_FAILED,
        }
        pending = set(detectors)
        errors: List[BaseException] = []
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                resolved = set()
                for task in done:
                    if task.exception() is None:
                        resolved.add(detectors[task])
                    else:
                        errors.append(task.exception())
                if AuthState.AUTH_FAILED in resolved:
                    return AuthState.AUTH_FAILED
                if AuthState.AUTHENTICATED in resolved:
                    return AuthState.AUTHENTICATED
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self.auth_state = AuthState.AUTH_FAILED
        raise AuthenticationError(
            f"Login outcome not detected within {LOGIN_DETECT_TIMEOUT_MS // 1000}s: {errors[-1]}"
        )

    async def open_new_patient_form(self, ready_timeout_ms: int = FORM_READY_TIMEOUT_MS) -> None:
        """
        Navigate to the new-patient form and wait for its first field.

        Raises:
            NavigationError: the page did not load
            FormNotReadyError: the anchor field did not appear in time
        """
        try:
            await self.page.goto(NEW_PATIENT_URL, wait_until="domcontentloaded", timeout=PAGE_LOAD_TIMEOUT_MS)
        except PlaywrightError as e:
            raise NavigationError(f"Could not load new patient form: {e}") from e

        try:
            await self.page.wait_for_selector(FORM_ANCHOR, timeout=ready_timeout_ms)
        except PlaywrightError as e:
            raise FormNotReadyError(
                f"Field {FORM_ANCHOR} not ready after {ready_timeout_ms // 1000}s: {e}"
            ) from e

    async def populate_fields(self, patient_data: Dict[str, Any]) -> List[str]:
        """
        Fill the form fields present in ``patient_data``.

        Fields are visited in form order whatever the order of the mapping.
        Missing, None and empty values leave the field untouched.

        Returns:
            Payload keys that were written to the form
        """
        filled = []
        for key, selector, action in PATIENT_FORM_FIELDS:
            value = patient_data.get(key)
            if value is None or value == "":
                continue
            if action == "select":
                await self.page.select_option(selector, str(value))
            else:
                await self.page.fill(selector, str(value))
            filled.append(key)
        return filled


async def fill_patient_form(
    patient_data: Dict[str, Any],
    settings: Optional[Settings] = None,
    session_factory=IsiClinicSession,
) -> Dict[str, Any]:
    """
    Log in and fill the IsiClinic new-patient form with ``patient_data``.

    The form is left filled but not saved: the final "guardar" click stays
    with a human operator. A ``paciente_rellenado`` screenshot records the
    filled form; on error a ``formulario_error`` screenshot is attempted and
    the original exception is re-raised.
    """
    settings = settings or Settings.from_env()
    async with session_factory(settings) as session:
        try:
            await session.login()
            await session.open_new_patient_form()
            filled = await session.populate_fields(patient_data)
            logger.info("📝 Filled %d field(s): %s", len(filled), ", ".join(filled))
            await session.take_screenshot("paciente_rellenado")
            return {"ok": True, "datos_enviados": patient_data}
        except Exception as e:
            logger.error("❌ Error filling IsiClinic form: %s", e)
            await session.take_screenshot("formulario_error")
            raise


async def run_test_login(
    settings: Optional[Settings] = None,
    session_factory=IsiClinicSession,
) -> Dict[str, Any]:
    """Log in and fill a demo patient to check credentials and selectors."""
    settings = settings or Settings.from_env()
    async with session_factory(settings) as session:
        try:
            await session.login()
            await session.open_new_patient_form(ready_timeout_ms=TEST_FORM_READY_TIMEOUT_MS)
            await session.populate_fields({"nombre": "Test-Alía", "apellidos": "Test-Buchar"})
            await session.take_screenshot("test_login_success")
            return {"ok": True, "message": "Test de login y formulario OK"}
        except Exception as e:
            logger.error("❌ Error in test login: %s", e)
            await session.take_screenshot("test_login_error")
            raise
