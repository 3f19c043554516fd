"""
Actor, role and tenant gating shared by the examination helpers
"""

from models import Student, Class, ADMIN_ROLES, STAFF_ROLES
from examination_models import Examination
from exam_errors import Unauthorized, Forbidden, NotFound


def require_actor(actor):
    """Raise Unauthorized unless an authenticated actor is present"""
    if actor is None or not getattr(actor, 'is_authenticated', False):
        raise Unauthorized()
    return actor


def require_role(actor, roles):
    require_actor(actor)
    if actor.role not in roles:
        raise Forbidden()
    return actor


def require_admin(actor):
    return require_role(actor, ADMIN_ROLES)


def require_staff(actor):
    return require_role(actor, STAFF_ROLES)


def can_access_tenant(actor, tenant_id):
    # Portal admins are not bound to a school
    return actor.role == 'portal_admin' or actor.tenant_id == tenant_id


def load_exam(session, actor, exam_id, for_update=False):
    """
    Fetch an examination visible to the actor.

    An exam belonging to another institution is reported as missing rather
    than forbidden so its existence is not disclosed.
    """
    require_actor(actor)
    query = session.query(Examination).filter(Examination.id == exam_id)
    if for_update:
        query = query.with_for_update()
    exam = query.first()
    if exam is None or not can_access_tenant(actor, exam.tenant_id):
        raise NotFound(f"Examination {exam_id} not found")
    return exam


def load_class(session, actor, class_id):
    cls = session.query(Class).filter(Class.id == class_id).first()
    if cls is None or not can_access_tenant(actor, cls.tenant_id):
        raise NotFound(f"Class {class_id} not found")
    return cls


def own_student_ids(session, actor):
    """Student ids a student or parent actor may see (their own / their children)"""
    if actor.role == 'student':
        rows = session.query(Student.id).filter(Student.user_id == actor.id).all()
    elif actor.role == 'parent':
        rows = session.query(Student.id).filter(Student.guardian_user_id == actor.id).all()
    else:
        return []
    return [r[0] for r in rows]
