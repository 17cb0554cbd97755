"""Authentication utility helpers."""

from collections import namedtuple

from marketplace.errors import Unauthenticated

Identity = namedtuple('Identity', ['uid', 'email'])


def extract_bearer_token(request):
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return ''
    return auth_header.split('Bearer ', 1)[1].strip()


def verify_firebase_token(request, auth_module, logger):
    """Return decoded Firebase token dict, or None when invalid/missing."""
    token = extract_bearer_token(request)
    if not token:
        return None
    try:
        return auth_module.verify_id_token(token)
    except Exception as exc:
        if logger is not None:
            logger.info(f"Token verification failed: {exc}")
        return None


def identity_from_token(decoded_token):
    """Map a decoded token to an Identity; raises Unauthenticated when unusable."""
    if not decoded_token:
        raise Unauthenticated()
    uid = str(decoded_token.get('uid', '') or '').strip()
    if not uid:
        raise Unauthenticated()
    return Identity(uid=uid, email=str(decoded_token.get('email', '') or ''))
