"""Demo: GitHub sign-in for a FastAPI app with authgate.

Demonstrates the documented patterns:

- ``AuthGate.from_settings()`` building providers and storage from env vars
- ``gate.install(app)`` adding the middleware, routes and error handler
- ``session_context`` handing the session to handlers
- ``gate.csrf.dependency`` guarding a mutating route

Setup
-----
1. Create a GitHub OAuth app at https://github.com/settings/developers
2. Set its callback URL to ``http://localhost:3000/auth/github/callback``.
3. Export the credentials::

       export AUTHGATE_SECRET_KEY="$(python -c 'import secrets; print(secrets.token_hex(32))')"
       export AUTHGATE_GITHUB__CLIENT_ID="your-client-id"
       export AUTHGATE_GITHUB__CLIENT_SECRET="your-client-secret"

   Optionally share sessions between workers through Redis::

       export AUTHGATE_STORAGE__BACKEND=redis
       export AUTHGATE_STORAGE__REDIS_URL=redis://localhost:6379/0

4. Run::

       python examples/authgate_demo_github.py

   and open http://localhost:3000/login/github
"""

from __future__ import annotations

import sys

from typing import Any

import uvicorn

from fastapi import Depends, FastAPI
from fastapi.responses import HTMLResponse

from authgate import AuthGate, AuthGateSettings, SessionContext, session_context
from authgate.log import configure_logging


settings = AuthGateSettings()
configure_logging(settings.log)

if settings.github is None:
    print("Set AUTHGATE_GITHUB__CLIENT_ID and AUTHGATE_GITHUB__CLIENT_SECRET first.")
    sys.exit(1)

gate = AuthGate.from_settings(settings)
app = FastAPI(title="authgate demo", lifespan=gate.lifespan)
gate.install(app)


PAGE = """<!doctype html>
<html>
<body>
  <p>Signed in as user <code>{user_id}</code>.</p>
  <button id="save">Save something</button>
  <a href="/logout">Sign out</a>
  <pre id="out"></pre>
  <script>
    let token = null;
    async function refreshToken() {{
      const resp = await fetch("/session");
      token = (await resp.json()).csrf_token;
    }}
    document.getElementById("save").onclick = async () => {{
      if (!token) await refreshToken();
      const resp = await fetch("/items", {{method: "POST", headers: {{"X-Csrf-Token": token}}}});
      token = resp.headers.get("X-Csrf-Token");
      document.getElementById("out").textContent = await resp.text();
    }};
  </script>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def home(context: SessionContext = Depends(session_context)) -> str:
    """Landing page, only reachable with a session."""
    return PAGE.format(user_id=context.user_id)


@app.post("/items")
async def create_item(
    csrf_token: str | None = Depends(gate.csrf.dependency),
    context: SessionContext = Depends(session_context),
) -> dict[str, Any]:
    """A mutating route: needs the session and a fresh CSRF token."""
    return {"saved": True, "user_id": context.user_id, "next_csrf_token": csrf_token}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=3000)
