from abc import ABC, abstractmethod
from typing import Any

import httpx
from httpx._types import QueryParamTypes, RequestContent

from shared.errors.engine_errors import KnowledgeEngineError
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


class ClientInterface(ABC):
    """Base of every backend client (store, embed, llm).

    A concrete client is identified by its type and engine, e.g. ``embed``/``ollama``.
    Its settings live in env variables prefixed ``{TYPE}_{ENGINE}_``; the common
    ones (``{TYPE}_TIMEOUT``) only carry the type.
    """

    # raised for transport failures and, with raise_on_error, for non-2xx answers
    request_error_class: type[KnowledgeEngineError] = KnowledgeEngineError

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.timeout = helper_config.get_number_val(f"{self.get_client_type().upper()}_TIMEOUT", default=30.0)
        self._client: httpx.AsyncClient | None = None
        self._check_required_config()

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def get_client_type(self) -> str:
        return self._get_client_type().lower()

    @abstractmethod
    def _get_client_type(self) -> str:
        """E.g. "store"."""
        pass

    def get_engine_name(self) -> str:
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        """E.g. "Qdrant". Must match the engine's package name case-insensitively."""
        pass

    ################ CONFIG ##################
    @abstractmethod
    def _get_required_config(self) -> list[EnvConfig]:
        """Engine settings checked on construction. A None default marks a mandatory key."""
        pass

    def _check_required_config(self) -> None:
        """
        Raises:
            ValueError: If a mandatory setting is missing or malformed.
        """
        for config in self._get_required_config():
            self.get_config_val(raw_key=config.env_key, default=config.default, val_type=config.val_type)

    def get_config_key(self, raw_key: str) -> str:
        """E.g. "API_KEY" -> "STORE_QDRANT_API_KEY"."""
        return f"{self.get_client_type()}_{self.get_engine_name()}_{raw_key}".upper()

    def get_config_val(self, raw_key: str, default: Any = None, val_type: str = "string") -> Any:
        """Read an engine setting through HelperConfig.

        Args:
            raw_key (str): Key without the type/engine prefix, e.g. "BASE_URL".
            default (Any): Value used when the variable is unset. None makes it mandatory.
            val_type (str): One of "string", "number", "bool", "list".
        """
        readers = {
            "string": self._helper_config.get_string_val,
            "number": self._helper_config.get_number_val,
            "bool": self._helper_config.get_bool_val,
            "list": self._helper_config.get_list_val,
        }
        if val_type not in readers:
            raise ValueError(f"Unsupported config value type '{val_type}' for {self.get_config_key(raw_key)}.")
        return readers[val_type](self.get_config_key(raw_key), default=default)

    ################ AUTH ##################
    @abstractmethod
    def _get_auth_header(self) -> dict:
        """Headers authenticating against the backend, empty if no key is configured."""
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_base_url(self) -> str:
        """E.g. "http://localhost:6333"."""
        pass

    @abstractmethod
    def _get_endpoint_healthcheck(self) -> str:
        """E.g. "/healthz"; "" for the backend root."""
        pass

    def _build_url(self, endpoint: str) -> str:
        endpoint = endpoint.strip()
        path = "/" + endpoint.lstrip("/") if endpoint else ""
        return f"{self._get_base_url().rstrip('/')}{path}"

    ##########################################
    ############### LIFECYCLE ################
    ##########################################

    async def boot(self) -> None:
        """Open the HTTP connection pool. Must be called before any request."""
        self._client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_healthcheck(self) -> httpx.Response:
        return await self.do_request(method="GET", endpoint=self._get_endpoint_healthcheck())

    async def do_request(
        self,
        method: str = "GET",
        endpoint: str = "",
        json: dict | None = None,
        content: RequestContent | None = None,
        params: QueryParamTypes | None = None,
        additional_headers: dict | None = None,
        raise_on_error: bool = False,
    ) -> httpx.Response:
        """Send a request to the backend.

        Args:
            method (str): HTTP method.
            endpoint (str): Path below the base URL, leading slash optional.
            json (dict | None): JSON body. Ignored when ``content`` is given.
            content (RequestContent | None): Raw body; set its Content-Type via ``additional_headers``.
            params (QueryParamTypes | None): URL query parameters.
            additional_headers (dict | None): Merged over the auth headers.
            raise_on_error (bool): Raise on status >= 300 instead of returning the response.

        Returns:
            httpx.Response: The raw response.

        Raises:
            KnowledgeEngineError: As ``request_error_class``, if the client is not booted,
                the transport fails, or ``raise_on_error`` is set and the status is >= 300.
        """
        if self._client is None:
            raise self.request_error_class(
                f"{self.get_client_type().upper()} client '{self.get_engine_name()}' is not booted."
            )

        url = self._build_url(endpoint)
        headers = {**self._get_auth_header(), **(additional_headers or {})}
        body: dict = {"content": content} if content is not None else {"json": json} if json is not None else {}

        try:
            response = await self._client.request(
                method, url, headers=headers, params=params, timeout=self.timeout, **body
            )
        except httpx.HTTPError as exc:
            self.logging.error("%s %s failed: %s", method, url, exc)
            raise self.request_error_class(f"{method} {url} failed: {exc}") from exc

        if raise_on_error and response.status_code >= 300:
            self.logging.error("%s %s returned %d: %s", method, url, response.status_code, response.text[:200])
            raise self.request_error_class(f"{method} {url} returned status {response.status_code}.")
        return response
