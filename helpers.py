import re
from datetime import datetime

from flask import request, jsonify, g

from models import db, ActivityLog, Notification


# --- RESPONSES ---

def success_response(data=None, status_code=200, message=None, **extra):
    body = {'status': 'success'}
    if message:
        body['message'] = message
    if data is not None:
        body['data'] = data
    body.update(extra)
    return jsonify(body), status_code


def error_response(message, status_code=400, **extra):
    body = {'status': 'error', 'message': message}
    body.update(extra)
    return jsonify(body), status_code


def fail_response(message, status_code=400, **extra):
    body = {'status': 'fail', 'message': message}
    body.update(extra)
    return jsonify(body), status_code


DUPLICATE_PATTERNS = [
    re.compile(r'UNIQUE constraint failed: \w+\.(\w+)'),      # sqlite
    re.compile(r"Duplicate entry .* for key '(?:\w+\.)?(\w+)'"),  # mysql
    re.compile(r'Key \((\w+)\)=')                             # postgres
]


def duplicate_field_message(error):
    """Turns a unique-constraint IntegrityError into a client message."""
    text = str(getattr(error, 'orig', error))
    for pattern in DUPLICATE_PATTERNS:
        match = pattern.search(text)
        if match:
            return f"This {match.group(1)} is already registered."
    return 'Duplicate value. This record already exists.'


# --- REQUEST PARSING ---

def get_json_body():
    return request.get_json(silent=True) or {}


def paginate(query, page=1, limit=20):
    pagination = query.paginate(page=page, per_page=limit, error_out=False)
    return pagination.items, {
        'page': page,
        'pages': pagination.pages,
        'total': pagination.total,
        'limit': limit
    }


def apply_sort(query, model, sort_by, sort_order='desc', default=None):
    if sort_by and hasattr(model, sort_by):
        col = getattr(model, sort_by)
        return query.order_by(col.asc() if sort_order == 'asc' else col.desc())
    if default is not None:
        return query.order_by(default)
    return query


def client_ip():
    return request.headers.get('X-Forwarded-For', request.remote_addr)


# --- AUDIT & INBOX ---

def log_activity(action, entity_type=None, entity_id=None, details=None, user_id=None):
    try:
        if user_id is None:
            user = getattr(g, 'user', None)
            user_id = user.id if user else None
        # Public events have no user to attribute
        if not user_id:
            return

        log = ActivityLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id else None,
            details=details,
            ip_address=client_ip()
        )
        db.session.add(log)
        db.session.commit()
    except Exception as e:
        print(f"❌ Logging error: {e}")
        db.session.rollback()


def broadcast_notification(title, message, target_user_id=None, type='system', data=None):
    """
    Creates an inbox record.
    target_user_id: None for system-wide, or the id of a specific user.
    The caller commits.
    """
    notification = Notification(
        user_id=target_user_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
        is_read=False,
        created_at=datetime.utcnow()
    )
    db.session.add(notification)
    return notification
