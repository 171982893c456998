"""HTML templates for browser-facing OAuth pages."""

import html
from typing import Optional

CALLBACK_ERROR_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>Authorization Failed - OneNote MCP</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            min-height: 100vh;
            margin: 0;
            background: #f5f5f5;
        }}
        .container {{
            background: white;
            padding: 40px;
            border-radius: 12px;
            box-shadow: 0 4px 20px rgba(0,0,0,0.1);
            max-width: 480px;
        }}
        h1 {{ color: #c00; font-size: 22px; margin-top: 0; }}
        code {{ background: #fee; padding: 2px 6px; border-radius: 4px; }}
        p {{ color: #555; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Authorization failed</h1>
        <p><code>{error}</code></p>
        <p>{description}</p>
        <p>You can close this window and try connecting again.</p>
    </div>
</body>
</html>
"""


def render_callback_error(error: str, description: Optional[str] = None) -> str:
    """Render the callback error page with HTML-escaped values."""
    return CALLBACK_ERROR_PAGE.format(
        error=html.escape(error),
        description=html.escape(description or ""),
    )
