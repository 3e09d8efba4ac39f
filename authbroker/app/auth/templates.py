"""
Callback page rendering.

The callback handler only produces a ``CallbackArtifact``; this module turns
it into the HTML page served to the browser. The page exposes code and state
as data attributes for the client-side script, never as visible text.
"""

from dataclasses import dataclass
from html import escape
from typing import Optional


@dataclass(frozen=True)
class CallbackArtifact:
    success: bool
    title: str
    message: str
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def succeeded(cls, code: str, state: str) -> "CallbackArtifact":
        return cls(
            success=True,
            title="Authentication Successful",
            message="You can close this window and return to the app.",
            code=code,
            state=state,
        )

    @classmethod
    def failed(
        cls,
        error: str,
        error_description: Optional[str] = None,
        state: Optional[str] = None,
    ) -> "CallbackArtifact":
        return cls(
            success=False,
            title="Authentication Failed",
            message=error_description or "An error occurred during authentication.",
            state=state,
            error=error,
            error_description=error_description,
        )


def _attr(value: Optional[str]) -> str:
    return escape(value or "", quote=True)


def render_callback_page(artifact: CallbackArtifact) -> str:
    """Render the callback artifact as a standalone HTML page"""
    icon = "OK" if artifact.success else "X"
    icon_class = "success" if artifact.success else "error"
    retry = "" if artifact.success else '<a href="/" class="button">Try Again</a>'

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{escape(artifact.title)}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
            background: #f3f4f6;
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            margin: 0;
        }}
        .container {{
            background: white;
            border-radius: 12px;
            padding: 40px;
            max-width: 500px;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
            text-align: center;
        }}
        .icon {{ font-size: 32px; font-weight: bold; margin-bottom: 16px; }}
        .icon.success {{ color: #10b981; }}
        .icon.error {{ color: #ef4444; }}
        .button {{
            display: inline-block;
            background: #667eea;
            color: white;
            padding: 12px 28px;
            border-radius: 8px;
            text-decoration: none;
        }}
    </style>
</head>
<body>
    <div class="container" id="auth-result"
         data-success="{'true' if artifact.success else 'false'}"
         data-code="{_attr(artifact.code)}"
         data-state="{_attr(artifact.state)}"
         data-error="{_attr(artifact.error)}"
         data-error-description="{_attr(artifact.error_description)}">
        <div class="icon {icon_class}">{icon}</div>
        <h1>{escape(artifact.title)}</h1>
        <p>{escape(artifact.message)}</p>
        {retry}
    </div>
</body>
</html>"""
