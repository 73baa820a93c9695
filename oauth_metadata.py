"""
OAuth Metadata and Discovery Endpoints

Implements the OAuth 2.0 discovery documents client platforms use to find the
proxy's endpoints:
- Protected Resource Metadata (RFC 9728)
- Authorization Server Metadata (RFC 8414)

Also builds the WWW-Authenticate challenges returned by protected endpoints.
"""

import logging
from typing import Dict, Any, List, Optional, Sequence
from urllib.parse import urlparse


def parse_scope_string(scope: Optional[str]) -> List[str]:
    """
    Parse space-separated scope string into list.

    Args:
        scope: Space-separated scopes

    Returns:
        List of individual scope strings
    """
    if not scope:
        return []
    return scope.strip().split()


class OAuthMetadataProvider:
    """
    Provides OAuth metadata for client discovery.

    Implements:
    - /.well-known/oauth-protected-resource (RFC 9728)
    - /.well-known/oauth-authorization-server (RFC 8414)
    """

    def __init__(self, server_url: str, scopes: Sequence[str], resource_path: str = "/mcp"):
        """
        Initialize metadata provider.

        Args:
            server_url: Public base URL of the proxy (e.g., https://mcp.example.com)
            scopes: Scopes supported by the upstream provider
            resource_path: Path of the protected resource
        """
        self.server_url = server_url.rstrip('/')
        self.scopes = list(scopes)
        self.resource_path = resource_path
        logging.info(f"OAuth metadata configured for server URL: {self.server_url}")

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.server_url}/.well-known/oauth-protected-resource"

    def get_protected_resource_metadata(self) -> Dict[str, Any]:
        """
        Get Protected Resource Metadata (RFC 9728).

        Tells clients what resource this server represents, which
        authorization server issues tokens for it, the available scopes and
        how to present bearer tokens.

        Returns:
            Protected resource metadata dict
        """
        return {
            "resource": f"{self.server_url}{self.resource_path}",
            # The proxy is its own authorization server
            "authorization_servers": [self.server_url],
            "scopes_supported": list(self.scopes),
            "bearer_methods_supported": ["header"],
        }

    def get_authorization_server_metadata(self) -> Dict[str, Any]:
        """
        Get Authorization Server Metadata (RFC 8414).

        Returns:
            Authorization server metadata dict
        """
        return {
            "issuer": self.server_url,
            "authorization_endpoint": f"{self.server_url}/authorize",
            "token_endpoint": f"{self.server_url}/token",
            "registration_endpoint": f"{self.server_url}/register",
            "scopes_supported": list(self.scopes),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            # Public clients only (no client authentication)
            "token_endpoint_auth_methods_supported": ["none"],
            "response_modes_supported": ["query"],
        }

    def generate_www_authenticate_header(
        self,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        scope: Optional[str] = None
    ) -> str:
        """
        Generate WWW-Authenticate header for bearer challenges (RFC 6750).

        Args:
            error: OAuth error code (e.g., "invalid_token")
            error_description: Human-readable error description
            scope: Required or recommended scopes

        Returns:
            WWW-Authenticate header value
        """
        parts = [f'Bearer resource_metadata="{self.resource_metadata_url}"']

        if scope:
            parts.append(f'scope="{scope}"')
        if error:
            parts.append(f'error="{error}"')
            if error_description:
                parts.append(f'error_description="{error_description}"')

        header = ", ".join(parts)
        logging.debug(f"Generated WWW-Authenticate header: {header[:100]}...")
        return header

    def filter_scope_to_supported(self, scope: Optional[str]) -> str:
        """
        Filter requested scope to only supported scopes.

        Args:
            scope: Space-separated scope string

        Returns:
            Filtered scope string, or all supported scopes if nothing remains
        """
        requested = parse_scope_string(scope)
        filtered = [s for s in requested if s in self.scopes]

        dropped = set(requested) - set(filtered)
        if dropped:
            logging.warning(f"Dropping unsupported scopes: {' '.join(sorted(dropped))}")

        return " ".join(filtered) if filtered else " ".join(self.scopes)

    def validate_metadata_consistency(self) -> Dict[str, Any]:
        """
        Check the discovery documents before serving them.

        Client platforms reject an issuer or resource that is not an absolute
        URL, and browsers drop Secure capsule cookies on plain http.

        Returns:
            {"valid": bool, "errors": [...], "warnings": [...]}
        """
        errors: List[str] = []
        warnings: List[str] = []

        parsed = urlparse(self.server_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            errors.append(f"Server URL must be an absolute http(s) URL: {self.server_url!r}")
        elif parsed.scheme == "http" and parsed.hostname not in ("localhost", "127.0.0.1"):
            warnings.append("Server URL uses plain http on a non-loopback host; capsule cookies need https")

        if parsed.query or parsed.fragment:
            errors.append("Server URL must not carry a query or fragment")

        if not self.resource_path.startswith("/"):
            errors.append(f"Resource path must start with '/': {self.resource_path!r}")

        if not self.scopes:
            errors.append("No scopes configured")

        return {"valid": not errors, "errors": errors, "warnings": warnings}
