"""
HTML pages shown in the kiosk's in-app browser
(OAuth result, location picker, Stripe checkout return pages)
"""

import json
from html import escape
from typing import Optional
from urllib.parse import quote

from .config import APP_URL_SCHEME

# App theme colors
THEME = {
    "primary": "#14b8a6",
    "primary_dark": "#0d9488",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "success": "#14b8a6",
    "danger": "#ef4444",
}

# Human-readable text for the callback error codes
OAUTH_ERROR_MESSAGES = {
    "missing_code": "Square did not return an authorization code.",
    "missing_state": "The authorization request is missing its state parameter.",
    "invalid_state": "This authorization link has expired. Please start again from the kiosk.",
    "token_exchange": "We could not complete the connection with Square.",
    "no_locations": "Your Square account has no locations.",
    "no_active_locations": "Your Square account has no active locations.",
    "location_fetch_failed": "We could not load your Square locations.",
    "database_error": "We could not save your Square connection.",
    "access_denied": "Authorization was cancelled.",
    "server_error": "Something went wrong on our side.",
}


def _page(title: str, body: str, head_extra: str = "") -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{escape(title)}</title>
  <style>
    body {{
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
      display: flex; flex-direction: column; align-items: center; justify-content: center;
      min-height: 100vh; margin: 0; padding: 20px; box-sizing: border-box;
      text-align: center; background-color: {THEME['background']}; color: {THEME['text_primary']};
    }}
    .card {{
      background: {THEME['card_bg']}; border-radius: 12px; padding: 40px;
      box-shadow: 0 4px 12px rgba(0,0,0,0.1); max-width: 500px; width: 100%;
    }}
    .icon {{ font-size: 64px; margin-bottom: 20px; }}
    h1.error {{ color: {THEME['danger']}; }}
    h1.success {{ color: {THEME['success']}; }}
    p {{ color: {THEME['text_muted']}; line-height: 1.6; }}
    .details {{ font-size: 12px; color: #999; margin-top: 20px; }}
    .location {{
      display: block; width: 100%; padding: 16px; margin: 10px 0; text-align: left;
      border: 1px solid {THEME['border']}; border-radius: 8px; background: #fff;
      font-size: 16px; cursor: pointer;
    }}
    .location:hover {{ border-color: {THEME['primary']}; }}
    .button {{
      display: inline-block; padding: 14px 28px; border-radius: 8px; border: none;
      background: {THEME['primary']}; color: #fff; font-size: 16px; text-decoration: none;
    }}
  </style>
  {head_extra}
</head>
<body>
{body}
</body>
</html>"""


def oauth_result_page(success: bool, error: Optional[str] = None, location: Optional[str] = None) -> str:
    """Result page at the end of the Square OAuth flow; closes itself on success"""
    if success:
        location_line = f"<p>Connected location: {escape(location)}</p>" if location else ""
        return _page(
            "Authorized",
            f"""<div class="card">
  <div class="icon">✅</div>
  <h1 class="success">Square connected</h1>
  {location_line}
  <p>You can close this window and return to the kiosk.</p>
</div>""",
            head_extra="<script>window.close();</script>",
        )

    message = OAUTH_ERROR_MESSAGES.get(error or "", OAUTH_ERROR_MESSAGES["server_error"])
    return _page(
        "Authorization Failed",
        f"""<div class="card">
  <div class="icon">❌</div>
  <h1 class="error">Authorization failed</h1>
  <p>{escape(message)}</p>
  <p>Close this window and try connecting again from the kiosk.</p>
  <div class="details">Error code: {escape(error or 'unknown')}</div>
</div>""",
    )


def location_select_page(state: str, locations: list) -> str:
    """Picker for merchants with more than one active location; posts the choice back as JSON"""
    buttons = "\n".join(
        f'<button class="location" data-id="{escape(loc.get("id") or "")}">'
        f'<strong>{escape(loc.get("name") or "Unnamed location")}</strong><br>'
        f'<small>{escape((loc.get("address") or {}).get("address_line_1", ""))}</small></button>'
        for loc in locations
    )
    script = f"""<script>
document.addEventListener("click", async function (event) {{
  const button = event.target.closest(".location");
  if (!button) return;
  const response = await fetch("/api/square/location-select", {{
    method: "POST",
    headers: {{"Content-Type": "application/json"}},
    body: JSON.stringify({{state: {json.dumps(state)}, location_id: button.dataset.id}})
  }});
  const data = await response.json();
  if (data.redirect_url) {{ window.location.href = data.redirect_url; }}
}});
</script>"""
    return _page(
        "Select Location",
        f"""<div class="card">
  <h1>Select a location</h1>
  <p>Choose the Square location this kiosk should take payments for.</p>
  {buttons}
</div>
{script}""",
    )


def stripe_success_page(session_id: Optional[str]) -> str:
    app_url = f"{APP_URL_SCHEME}://subscription-success?session_id={quote(session_id or '', safe='')}"
    return _page(
        "Subscription Active",
        f"""<div class="card">
  <div class="icon">🎉</div>
  <h1 class="success">Subscription active</h1>
  <p>Your 30-day free trial has started. Returning you to the app...</p>
  <a class="button" href="{app_url}">Return to app</a>
</div>""",
        head_extra=f'<script>setTimeout(function () {{ window.location.href = "{app_url}"; }}, 1500);</script>',
    )


def stripe_cancel_page() -> str:
    app_url = f"{APP_URL_SCHEME}://subscription-cancelled"
    return _page(
        "Checkout Cancelled",
        f"""<div class="card">
  <h1>Checkout cancelled</h1>
  <p>No charge was made. You can subscribe any time from the kiosk settings.</p>
  <a class="button" href="{app_url}">Return to app</a>
</div>""",
        head_extra=f'<script>setTimeout(function () {{ window.location.href = "{app_url}"; }}, 1500);</script>',
    )


def stripe_portal_return_page() -> str:
    app_url = f"{APP_URL_SCHEME}://subscription-manage"
    return _page(
        "Billing Updated",
        f"""<div class="card">
  <h1>All set</h1>
  <p>Returning you to the app...</p>
  <a class="button" href="{app_url}">Return to app</a>
</div>""",
        head_extra=f'<script>setTimeout(function () {{ window.location.href = "{app_url}"; }}, 1000);</script>',
    )
