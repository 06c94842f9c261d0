from .automation_routes import automation_bp
from .project_routes import project_bp
from .drip_routes import drip_bp
