import re

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def build_variables(project, tenant):
    client = project.client
    event_date = project.event_date.strftime('%m/%d/%Y') if project.event_date else 'Not set'
    return {
        "firstName": client.first_name,
        "lastName": client.last_name,
        "fullName": client.full_name,
        "email": client.email or '',
        "phone": client.phone or '',
        "businessName": (tenant.business_name if tenant else None) or 'Your Photographer',
        "eventDate": event_date,
        "weddingDate": event_date,
    }


def render_template(text, variables):
    """Substitute {{name}} placeholders; unknown names are left as they are."""
    if not text:
        return ""
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), m.group(0))), text)
