"""HTTP Basic authentication for gpodder.net."""

import base64
from urllib.parse import quote


class GpodderAuth:
    """Holds the credentials used to authenticate gpodder.net requests.

    The server accepts HTTP Basic auth on every request, or a ``sessionid``
    cookie obtained from the login endpoint. Credentials are passed in
    explicitly; this class never reads them from the environment.
    """

    def __init__(self, username: str, password: str) -> None:
        """Initialize authentication with credentials.

        Args:
            username: gpodder.net account name
            password: gpodder.net account password
        """
        self.username = username
        self.password = password

        if not self.username or not self.password:
            raise ValueError(
                "Missing gpodder.net credentials. Pass a username and password "
                "or set GPODDER_USERNAME and GPODDER_PASSWORD."
            )

    @property
    def quoted_username(self) -> str:
        """Username escaped for use as a path segment."""
        return quote(self.username, safe="")

    def get_headers(self) -> dict[str, str]:
        """Generate the Authorization header for a request."""
        token = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8"))
        return {"Authorization": f"Basic {token.decode('ascii')}"}

    def verify_credentials(self) -> bool:
        """Verify that credentials are set (does not test API connectivity)."""
        return bool(self.username and self.password)

    def __repr__(self) -> str:
        # never echo the password
        return f"GpodderAuth(username={self.username!r})"
