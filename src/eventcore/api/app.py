"""ASGI entrypoint: ``uvicorn eventcore.api.app:app``.

uvicorn ships in the ``server`` extra (``pip install eventcore[server]``).
"""

from .factory import create_app

app = create_app()
