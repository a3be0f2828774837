"""
ApnaParivar — app.py

- JSON API for families, members, relationships, photos, events and billing
- Google sign-in, JWT in a Bearer header or the auth_token cookie
- sqlite storage under DATA_DIR (uploads under UPLOAD_DIR)

Run locally with `python app.py`, or point any WSGI server at `app:app`.
"""

from __future__ import annotations

import os

from apnaparivar import create_app

app = create_app()


# -----------------------------
# LOCAL RUN
# -----------------------------
if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    app.run(host="127.0.0.1", port=port, debug=app.config["ENV_NAME"] == "development")
