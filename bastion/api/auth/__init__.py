"""Authentication module."""

from bastion.api.auth.api_keys import generate_api_key, hash_api_key
from bastion.api.auth.jwt import TokenClaims, create_access_token, decode_access_token
from bastion.api.auth.principal import AuthenticationFailed, Principal, authenticate

__all__ = [
    "generate_api_key",
    "hash_api_key",
    "TokenClaims",
    "create_access_token",
    "decode_access_token",
    "AuthenticationFailed",
    "Principal",
    "authenticate",
]
