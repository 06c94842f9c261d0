from functools import wraps
from flask import jsonify
from flask_jwt_extended import verify_jwt_in_request, get_jwt, get_jwt_identity
from extensions import db
from models.tenant import Tenant


def tenant_required(f):
    """Resolve the tenant from the JWT ``tenant_id`` claim and pass it to the view."""
    @wraps(f)
    def decorated(*args, **kwargs):
        verify_jwt_in_request()
        tenant_id = get_jwt().get('tenant_id')
        if tenant_id is None:
            return jsonify({'message': 'Token has no tenant'}), 401
        current_tenant = db.session.get(Tenant, int(tenant_id))
        if not current_tenant:
            return jsonify({'message': 'Tenant not found!'}), 401
        return f(current_tenant, *args, **kwargs)
    return decorated


def current_actor():
    identity = get_jwt_identity()
    return str(identity) if identity is not None else None
