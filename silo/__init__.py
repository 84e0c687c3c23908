from flask import Flask

from silo.config import Config


def create_app(workbench=None, start: bool = True) -> Flask:
    """
    Build the Flask app around a Workbench.

    Args:
        workbench: Pre-built Workbench (tests pass one with fake adapters)
        start: Start the workbench (first status probe, SSE bridge)
    """
    from silo.api.routes_models import models_bp
    from silo.api.routes_pipelines import pipelines_bp
    from silo.services.workbench import Workbench

    app = Flask(__name__)
    app.config.from_object(Config)

    if workbench is None:
        Config.init_app(app)
        workbench = Workbench()
    if start:
        workbench.start()
    app.workbench = workbench

    app.register_blueprint(models_bp)
    app.register_blueprint(pipelines_bp)

    return app
