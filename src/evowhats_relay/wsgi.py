"""Ponto de entrada WSGI (gunicorn `evowhats_relay.wsgi:app` ou `python -m evowhats_relay.wsgi`)."""
from kink import di
from .api.app import create_app
from .core.settings import Settings
from .tasks.token_refresh import start_all_token_refresh_loops

app = create_app()

if __name__ == "__main__":
    s = di[Settings]
    start_all_token_refresh_loops()
    app.run(host=s.host, port=s.port, debug=s.flask_debug)
