"""Thin API launcher.

Run with: uvicorn main:app --reload

The app instance is created here (not in unfurl.app) so importing
create_app has no side effects beyond logging setup.
"""

from unfurl.app import add_request_id_middleware, create_app

app = create_app()
# Added last so it runs first (outermost)
add_request_id_middleware(app)

__all__ = ["app"]
