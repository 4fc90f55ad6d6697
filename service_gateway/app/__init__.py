"""
Gateway service package for webplow.

The gateway accepts authenticated image uploads, stages them on local disk,
has imgproxy convert them to WebP and streams the result back.

Structure:
- app.main: FastAPI app, routes and process bootstrap.
- app.auth: file-backed API key store and header authentication.
- app.adapters: HTTP client for the imgproxy backend.
- app.domain: upload relay pipeline and audit log.
- app.token_admin: command-line credential administration.
"""
