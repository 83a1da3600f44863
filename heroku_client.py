"""
Heroku Platform API v3 client.

Only the calls the deploy pipeline, the management menu and the
supervisor need are bound here.
"""

import logging
from typing import Dict, List, Optional, Any

import aiohttp

logger = logging.getLogger(__name__)

HEROKU_API_URL = "https://api.heroku.com"


class PlatformError(Exception):
    """Raised when the platform API rejects or fails a request"""

    def __init__(self, message: str, status: Optional[int] = None, app_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.app_name = app_name


class AppNotFoundError(PlatformError):
    """The remote application does not exist (anymore)"""


class NameCollisionError(PlatformError):
    """The requested application name is already taken"""


class HerokuClient:
    def __init__(self, api_key: str, base_url: str = HEROKU_API_URL,
                 session: Optional[aiohttp.ClientSession] = None, timeout: int = 30):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/vnd.heroku+json; version=3",
            "Content-Type": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, app_name: Optional[str] = None,
                       json: Any = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, json=json, headers=self.headers) as response:
                if response.status == 204:
                    return None
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
                if response.status < 400:
                    return payload
                message = (payload or {}).get("message") if isinstance(payload, dict) else None
                message = message or f"HTTP {response.status}"
                if response.status == 404:
                    raise AppNotFoundError(message, response.status, app_name)
                if response.status == 422 and "taken" in message.lower():
                    raise NameCollisionError(message, response.status, app_name)
                raise PlatformError(message, response.status, app_name)
        except aiohttp.ClientError as e:
            logger.error(f"Heroku request {method} {path} failed: {e}")
            raise PlatformError(str(e), app_name=app_name) from e

    async def create_app(self, app_name: str, region: str = "us", stack: str = "heroku-24") -> Dict:
        logger.info(f"Creating app {app_name}")
        return await self._request("POST", "/apps", app_name,
                                   json={"name": app_name, "region": region, "stack": stack})

    async def get_app(self, app_name: str) -> Dict:
        return await self._request("GET", f"/apps/{app_name}", app_name)

    async def configure_addons(self, app_name: str, addons: List[str]):
        for plan in addons:
            await self._request("POST", f"/apps/{app_name}/addons", app_name, json={"plan": plan})

    async def configure_buildpacks(self, app_name: str, buildpacks: List[str]):
        updates = [{"buildpack": buildpack} for buildpack in buildpacks]
        return await self._request("PUT", f"/apps/{app_name}/buildpack-installations",
                                   app_name, json={"updates": updates})

    async def get_config(self, app_name: str) -> Dict[str, str]:
        return await self._request("GET", f"/apps/{app_name}/config-vars", app_name) or {}

    async def patch_config(self, app_name: str, values: Dict[str, Optional[str]]) -> Dict[str, str]:
        """Merge config vars; keys not in ``values`` are left untouched"""
        return await self._request("PATCH", f"/apps/{app_name}/config-vars", app_name, json=values)

    async def trigger_build(self, app_name: str, source_url: str, version: str = "master") -> str:
        build = await self._request("POST", f"/apps/{app_name}/builds", app_name,
                                    json={"source_blob": {"url": source_url, "version": version}})
        return build["id"]

    async def poll_build(self, app_name: str, build_id: str) -> str:
        """pending | succeeded | failed"""
        build = await self._request("GET", f"/apps/{app_name}/builds/{build_id}", app_name)
        return build.get("status", "error")

    async def list_dynos(self, app_name: str) -> List[Dict]:
        return await self._request("GET", f"/apps/{app_name}/dynos", app_name) or []

    async def restart_dynos(self, app_name: str):
        await self._request("DELETE", f"/apps/{app_name}/dynos", app_name)

    async def delete_app(self, app_name: str):
        logger.info(f"Deleting app {app_name}")
        await self._request("DELETE", f"/apps/{app_name}", app_name)

    async def fetch_logs(self, app_name: str, lines: int = 100, source: Optional[str] = None) -> str:
        body = {"lines": lines, "tail": False}
        if source:
            body["source"] = source
        log_session = await self._request("POST", f"/apps/{app_name}/log-sessions", app_name, json=body)
        session = await self._get_session()
        try:
            async with session.get(log_session["logplex_url"], headers={"Accept": "text/plain"}) as response:
                if response.status >= 400:
                    raise PlatformError(f"Log stream returned HTTP {response.status}",
                                        response.status, app_name)
                return await response.text()
        except aiohttp.ClientError as e:
            raise PlatformError(str(e), app_name=app_name) from e
