import secrets
from nanoid import generate

SECRET_SIZE=32

def generate_token(size=SECRET_SIZE):
    """Generate a URL-safe shared secret suitable for the handshake line"""
    return generate(size=size)

def validate_token(token,expected_token):
    token=token.encode()
    expected_token=expected_token.encode()
    if len(token)!=len(expected_token):
        return False
    return secrets.compare_digest(token,expected_token)
