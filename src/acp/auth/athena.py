from __future__ import annotations

import http.client
import logging
from dataclasses import dataclass

from ..errors import CredentialError
from ..http_utils import HttpClient, basic_auth_header, form_encode


logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://api.preview.platform.athenahealth.com/oauth2/v1/token"
DEFAULT_SCOPE = "athena/service/Athenanet.MDP.*"


@dataclass(slots=True)
class AthenaCredentialProvider:
    """
    athenahealth OAuth2 client_credentials 签发。

    POST {token_url}
      Authorization: Basic base64(client_id:client_secret)
      body: grant_type=client_credentials&scope=<scope>
    响应中取 access_token。
    """

    client_id: str
    client_secret: str
    http: HttpClient
    token_url: str = DEFAULT_TOKEN_URL
    scope: str = DEFAULT_SCOPE

    def fetch_token(self) -> str:
        try:
            resp = self.http.post(
                self.token_url,
                data=form_encode({"grant_type": "client_credentials", "scope": self.scope}),
                headers={
                    "Authorization": basic_auth_header(self.client_id, self.client_secret),
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
        except (OSError, http.client.HTTPException) as e:
            raise CredentialError(f"token endpoint unreachable: {e}", body=str(e)) from e

        if not resp.ok:
            raise CredentialError("token request rejected", status=resp.status, body=resp.text())

        try:
            data = resp.json()
        except ValueError as e:
            raise CredentialError("token response is not JSON", status=resp.status, body=resp.text()) from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise CredentialError("token response missing access_token", status=resp.status, body=resp.text())

        logger.debug("token issued: client_id=%s token_url=%s", self.client_id, self.token_url)
        return token
