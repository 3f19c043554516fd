# main.py
"""
Examination Lifecycle & Results Analytics Engine
Single database, path-based multi-tenancy (/<tenant_slug>/api/...)
"""

import logging
from flask import Flask, request, g, jsonify
from flask_login import LoginManager

# --- local modules ---
from config import get_config
from db_single import get_session, init_database
from models import User, Tenant
from cli_commands import register_cli_commands
from init_db import run_on_startup

# First path segments that never name a school
SKIP = {"admin", "static", "", "api", "favicon.ico", "robots.txt", "_healthz", "_status"}


def create_app(config_name=None) -> Flask:
    """Create the application with single database multi-tenancy"""
    config = get_config(config_name)

    app = Flask(__name__)
    app.config.from_object(config)

    # Logging
    logging.basicConfig(level=logging.DEBUG if getattr(config, 'DEBUG', False) else logging.INFO)
    logger = logging.getLogger(__name__)

    # DB init
    engine, session_factory = init_database(config)
    if not run_on_startup(engine, create_admin=not config.TESTING):
        logger.warning("Database initialization had issues; the application may not work correctly")

    # Flask-Login
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            if "_" in user_id:
                t = user_id.split("_")
                if t[0] == "admin":
                    s = get_session()
                    try:
                        return s.query(User).filter_by(
                            id=int(t[1]), role="portal_admin", is_active=True
                        ).first()
                    finally:
                        s.close()
                elif t[0] == "school" and len(t) >= 3:
                    tenant_id, actual_id = t[1], t[2]
                    s = get_session()
                    try:
                        return s.query(User).filter_by(
                            id=int(actual_id), tenant_id=int(tenant_id), is_active=True
                        ).first()
                    finally:
                        s.close()
        except (ValueError, IndexError) as e:
            logger.error(f"user_loader error: {e}")
        return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'message': 'Authentication required'}), 401

    # CLI
    register_cli_commands(app)

    # Dynamic school blueprint
    from school_routes_dynamic import create_school_blueprint
    app.register_blueprint(create_school_blueprint())
    logger.info("School blueprint registered")

    @app.before_request
    def tenant_scope():
        parts = request.path.strip("/").split("/")
        p = parts[0] if parts else ""
        if p in SKIP or p.startswith("_"):
            return

        s = get_session()
        try:
            tenant = s.query(Tenant).filter_by(slug=p, is_active=True).first()
            if tenant:
                g.current_tenant = tenant
                g.tenant_id = tenant.slug
            elif "." not in p:
                return jsonify({'success': False, 'message': f'School {p} not found or inactive'}), 404
        finally:
            s.close()

    @app.route("/_healthz")
    def healthz():
        return jsonify({'success': True, 'message': 'ok', 'data': None})

    @app.errorhandler(404)
    def nf(_):
        return jsonify({'success': False, 'message': 'Not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(_):
        return jsonify({'success': False, 'message': 'Method not allowed'}), 405

    return app


if __name__ == "__main__":
    # use_reloader=False prevents server restart which kills email threads
    create_app().run(debug=True, host="0.0.0.0", port=5000, use_reloader=False)
