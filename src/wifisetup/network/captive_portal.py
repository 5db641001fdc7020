"""Captive portal for WiFi setup.

Serves the setup form to devices joined to the access point, answers
OS captive-portal probes, and hands submitted credentials to the
connectivity manager.
"""

import html
import logging
from typing import TYPE_CHECKING

from fastapi import BackgroundTasks, FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from ..core.errors import ProvisioningError, ValidationError

if TYPE_CHECKING:
    from .manager import ConnectivityManager

logger = logging.getLogger(__name__)

# Probes answered with the setup page
SETUP_REDIRECT_PATHS = [
    "/kindle-wifi/wifistub.html",  # Kindle
    "/generate_204",  # Android, Chrome
    "/gen_204",
    "/fwlink/",  # Windows
    "/redirect",  # Windows
    "/success.txt",  # Firefox
]

# Probes whose clients may expect a WISPr XML response
WISPR_PATHS = [
    "/hotspot-detect.html",  # iOS/macOS
    "/library/test/success.html",  # iOS/macOS
    "/connecttest.txt",  # Windows
]

WISPR_USER_AGENTS = ("CaptiveNetworkSupport", "Microsoft NCSI")

_PAGE_STYLE = """
    * { box-sizing: border-box; }
    body {
        font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
        background: #16213e;
        color: #fff;
        margin: 0;
        padding: 20px;
    }
    .container { max-width: 400px; margin: 0 auto; padding: 30px; }
    h1 { text-align: center; font-size: 24px; }
    label { display: block; margin: 12px 0 6px; opacity: 0.8; }
    select, input { width: 100%; padding: 12px; border: none; border-radius: 8px; font-size: 16px; }
    button { width: 100%; padding: 12px; margin-top: 16px; border: none; border-radius: 8px;
             background: #0099ff; color: #fff; font-size: 16px; cursor: pointer; }
    button.secondary { background: transparent; border: 1px solid #0099ff; }
    .error { color: #ff6b6b; text-align: center; }
"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{html.escape(title)}</title>
    <style>{_PAGE_STYLE}</style>
</head>
<body>
    <div class="container">
{body}
    </div>
</body>
</html>
"""


def render_setup_page(networks: list, error: str | None = None) -> str:
    """Render the network selection form."""
    options = "\n".join(
        '<option value="{ssid}">{lock}{ssid} ({quality}%)</option>'.format(
            ssid=html.escape(n.ssid, quote=True),
            lock="&#128274; " if n.encryption else "",
            quality=n.quality,
        )
        for n in networks
    )
    error_html = f'<p class="error">{html.escape(error)}</p>' if error else ""

    body = f"""
        <h1>WiFi Setup</h1>
        {error_html}
        <form action="/connecting" method="post">
            <label>Network</label>
            <select name="ssid">
                <option value="">Select network...</option>
                {options}
            </select>
            <label>Password</label>
            <input type="password" name="password" placeholder="Leave empty for open networks">
            <button type="submit">Connect</button>
        </form>
        <form action="/connecting" method="post">
            <input type="hidden" name="skip" value="1">
            <button type="submit" class="secondary">Skip</button>
        </form>
"""
    return _page("WiFi Setup", body)


def render_connecting_page(skip: bool, domain: str) -> str:
    """Render the page shown while the device switches networks."""
    if skip:
        message = "<h1>Setup skipped</h1><p>The setup network will now shut down.</p>"
    else:
        message = "<h1>Connecting...</h1><p>The setup network will now shut down.</p>"

    body = f"""
        {message}
        <p>Reconnect to your usual network, then visit
        <b>http://{html.escape(domain)}.local/</b></p>
"""
    return _page("Connecting", body)


def render_wispr(ssid: str, ap_ip: str) -> str:
    """WISPr XML pointing Apple/Microsoft probes at the setup page."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<WISPAccessGatewayParam xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xsi:noNamespaceSchemaLocation="http://www.wballiance.net/wispr_2_0.xsd">
<Redirect>
<MessageType>100</MessageType>
<ResponseCode>0</ResponseCode>
<AccessProcedure>1.0</AccessProcedure>
<AccessLocation>{html.escape(ssid)}</AccessLocation>
<LocationName>{html.escape(ssid)}</LocationName>
<LoginURL>http://{ap_ip}/wifi-setup</LoginURL>
</Redirect>
</WISPAccessGatewayParam>
"""


def create_app(manager: "ConnectivityManager") -> FastAPI:
    """Create the captive portal application.

    Args:
        manager: Connectivity manager that performs the transitions

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(title="WiFi Setup", docs_url=None, redoc_url=None)
    # One accepted submission at a time, from acceptance until its task ends
    app.state.submission_pending = False
    ap_ip = manager.network_config.ap_ip
    setup_url = f"http://{ap_ip}/wifi-setup"

    async def redirect_to_setup() -> RedirectResponse:
        return RedirectResponse(url=setup_url, status_code=302)

    for path in SETUP_REDIRECT_PATHS:
        app.add_api_route(path, redirect_to_setup, methods=["GET"], include_in_schema=False)

    async def wispr_probe(request: Request) -> RedirectResponse:
        user_agent = request.headers.get("user-agent", "")
        if any(ua in user_agent for ua in WISPR_USER_AGENTS):
            return RedirectResponse(url=f"http://{ap_ip}/hotspot.html", status_code=302)
        return RedirectResponse(url=setup_url, status_code=302)

    for path in WISPR_PATHS:
        app.add_api_route(path, wispr_probe, methods=["GET"], include_in_schema=False)

    @app.get("/hotspot.html")
    async def hotspot() -> Response:
        ssid = await manager.hotspot_ssid()
        return Response(content=render_wispr(ssid, ap_ip), media_type="text/xml")

    @app.get("/")
    async def index() -> RedirectResponse:
        if await manager.is_station_connected():
            logger.debug("Setup complete, redirecting to /status")
            return RedirectResponse(url="/status", status_code=302)
        logger.debug("No wifi connection, redirecting to /wifi-setup")
        return RedirectResponse(url="/wifi-setup", status_code=302)

    @app.get("/wifi-setup", response_class=HTMLResponse)
    async def wifi_setup() -> HTMLResponse:
        networks = await manager.scan()
        return HTMLResponse(render_setup_page(networks))

    def busy() -> bool:
        return manager.in_transition or app.state.submission_pending

    async def release_after(job, *args) -> None:
        try:
            await job(*args)
        finally:
            app.state.submission_pending = False

    @app.post("/connecting", response_class=HTMLResponse)
    async def connecting(
        background_tasks: BackgroundTasks,
        ssid: str = Form(""),
        password: str = Form(""),
        skip: str = Form(""),
    ) -> HTMLResponse:
        if busy():
            return _busy_response()

        domain = await manager.hostname()

        if skip == "1":
            job = (_run_skip, manager)
        else:
            try:
                manager.normalize_credentials(ssid, password)
            except ValidationError as e:
                networks = await manager.scan()
                return HTMLResponse(render_setup_page(networks, error=e.message), status_code=400)
            job = (_run_connect, manager, ssid, password)

        # No await between this check and the claim
        if busy():
            return _busy_response()
        app.state.submission_pending = True

        if skip == "1":
            logger.info("Skipping WiFi setup")
        else:
            logger.info("Connecting to WiFi: %s", ssid.strip())
        # Runs after the response is sent
        background_tasks.add_task(release_after, *job)
        return HTMLResponse(render_connecting_page(skip == "1", domain))

    @app.get("/status")
    async def status() -> JSONResponse:
        return JSONResponse(
            {
                "state": manager.state.value,
                "connected": manager.connected.is_set,
            }
        )

    return app


async def _run_connect(manager: "ConnectivityManager", ssid: str, password: str) -> None:
    try:
        await manager.apply_credentials(ssid, password)
    except ProvisioningError as e:
        logger.error("Failed to connect: %s", e, extra={"error": e.to_dict()})


async def _run_skip(manager: "ConnectivityManager") -> None:
    try:
        await manager.skip_setup()
    except ProvisioningError as e:
        logger.error("Failed to skip setup: %s", e, extra={"error": e.to_dict()})


def _busy_response() -> HTMLResponse:
    return HTMLResponse(
        _page("Busy", "<h1>Busy</h1><p>A network change is already in progress.</p>"),
        status_code=409,
    )
