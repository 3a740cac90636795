# render.py
import html
from typing import Optional


def esc(s: str | None) -> str:
    """
    HTML escape for any operator/user-derived text inserted into HTML strings.
    Always escape (including quotes).
    """
    return html.escape(s or "", quote=True)


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" + ("s" if n != 1 else "")


def format_duration(seconds: Optional[int]) -> str:
    """
    Human estimate for a Retry-After value.

    3600 -> "1 hour", 8100 -> "2 hours and 15 minutes", 300 -> "5 minutes",
    45 -> "45 seconds". Empty for None/0.
    """
    if not seconds or seconds <= 0:
        return ""
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60

    if hours > 0:
        text = _plural(hours, "hour")
        if minutes > 0:
            text += " and " + _plural(minutes, "minute")
        return text
    if minutes > 0:
        return _plural(minutes, "minute")
    return _plural(seconds, "second")


def render_maintenance_page(message: str, retry_after: Optional[int] = None) -> str:
    estimated = format_duration(retry_after)
    estimated_html = f'<p class="estimated-time">Estimated time: {esc(estimated)}</p>' if estimated else ""

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <meta name="robots" content="noindex, nofollow">
    <title>Site Maintenance</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;
               background: #f4f5f7; color: #333; display: flex; align-items: center;
               justify-content: center; min-height: 100vh; margin: 0; padding: 20px; }}
        .container {{ background: white; border-radius: 12px; max-width: 600px; width: 100%;
                      padding: 60px 40px; text-align: center; box-shadow: 0 10px 30px rgba(0,0,0,.15); }}
        h1 {{ font-size: 32px; color: #2d3748; margin-bottom: 20px; }}
        .message {{ font-size: 18px; line-height: 1.6; color: #4a5568; }}
        .estimated-time {{ font-size: 16px; color: #718096; font-style: italic; }}
        .footer {{ margin-top: 40px; padding-top: 30px; border-top: 1px solid #e2e8f0;
                   font-size: 14px; color: #a0aec0; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Under Maintenance</h1>
        <p class="message">{esc(message)}</p>
        {estimated_html}
        <div class="footer">Thank you for your patience</div>
    </div>
</body>
</html>
"""


def render_forbidden(reason: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><title>403 Forbidden</title></head>
<body>
    <h1>403 Forbidden</h1>
    <p>{esc(reason)}</p>
</body>
</html>
"""


def render_page(title: str, body_html: str) -> str:
    """Bare layout for the host pages. body_html must already be escaped."""
    return f"""<!DOCTYPE html>
<html>
<head><title>{esc(title)}</title></head>
<body>
<h1>{esc(title)}</h1>
{body_html}
</body>
</html>
"""


def render_login(csrf_token: str, redirect: str = "", error: str = "") -> str:
    error_html = f'<p class="error">{esc(error)}</p>' if error else ""
    return render_page(
        "Login",
        f"""
    {error_html}
    <form method="post" action="/login">
        <input type="hidden" name="csrf_token" value="{esc(csrf_token)}">
        <input type="hidden" name="redirect" value="{esc(redirect)}">
        <label>Username <input name="username"></label>
        <label>Password <input name="password" type="password"></label>
        <button type="submit">Login</button>
    </form>
    """,
    )


def render_post_form(csrf_token: str, titles: list[str]) -> str:
    items = "".join(f"<li>{esc(t)}</li>" for t in titles) or "<li>No posts yet</li>"
    return render_page(
        "Posts",
        f"""
    <ul>{items}</ul>
    <form method="post" action="/admin/posts">
        <input type="hidden" name="csrf_token" value="{esc(csrf_token)}">
        <label>Title <input name="title"></label>
        <button type="submit">Create</button>
    </form>
    """,
    )
