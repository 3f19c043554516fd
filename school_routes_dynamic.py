"""
Dynamic School Routes for Single Database Multi-Tenant System
One blueprint serves every school; the tenant comes from the URL slug
"""

from functools import wraps
from flask import Blueprint, request, g, jsonify
from flask_login import login_user, logout_user, current_user
import logging

from db_single import get_session
from models import User, Tenant

logger = logging.getLogger(__name__)


def api_error(message, status):
    return jsonify({'success': False, 'message': message}), status


def create_school_blueprint():
    """Create a single blueprint that handles all school tenants dynamically"""

    school_bp = Blueprint('school', __name__)

    def require_school_auth(f):
        """Decorator to require an authenticated user of the current school"""
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not hasattr(g, 'current_tenant'):
                return api_error('School not found or inactive', 404)

            if not current_user.is_authenticated:
                return api_error('Authentication required', 401)

            # Portal admins may act on any school
            if current_user.role != 'portal_admin' and current_user.tenant_id != g.current_tenant.id:
                return api_error('Access denied - wrong school', 403)

            return f(*args, **kwargs)

        return decorated_function

    @school_bp.route('/<tenant_slug>/api/login', methods=['POST'])
    def login(tenant_slug):
        """School user login"""
        session_db = get_session()
        try:
            school = session_db.query(Tenant).filter_by(slug=tenant_slug, is_active=True).first()
            if not school:
                return api_error('School not found or inactive', 404)

            data = request.get_json(silent=True) or {}
            username = (data.get('username') or '').strip()
            password = (data.get('password') or '').strip()
            if not username or not password:
                return api_error('Please enter both username and password', 400)

            user = session_db.query(User).filter_by(username=username, tenant_id=school.id, is_active=True).first()
            if not user or not user.check_password(password):
                return api_error('Invalid username or password', 401)

            login_user(user, remember=True)
            logger.info(f"User {user.id} ({user.role}) logged in to {tenant_slug}")
            return jsonify({
                'success': True,
                'message': f'Welcome back, {user.first_name or user.username}!',
                'data': {'user_id': user.id, 'role': user.role, 'name': user.full_name}
            })
        except Exception as e:
            logger.error(f"School login error for {tenant_slug}: {e}")
            return api_error('Login error occurred', 500)
        finally:
            session_db.close()

    @school_bp.route('/<tenant_slug>/api/logout', methods=['POST'])
    def logout(tenant_slug):
        """Logout school user"""
        logout_user()
        return jsonify({'success': True, 'message': 'You have been logged out successfully', 'data': None})

    from examination_routes import register_examination_routes
    register_examination_routes(school_bp, require_school_auth)

    return school_bp
