# ipfs.py — pin approved project metadata through Pinata
import requests
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_API_URL = "https://api.pinata.cloud"


class PinningError(Exception):
    pass


class PinataPinner:
    def __init__(self, jwt: str, api_url: str = DEFAULT_API_URL, timeout: float = 20.0, session=None):
        self.jwt = jwt
        self.api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def pin_json(self, document: dict, name: str = None) -> str:
        """Pin ``document``; returns ``ipfs://<cid>``."""
        body = {"pinataContent": document}
        if name:
            body["pinataMetadata"] = {"name": name}
        try:
            r = self.session.post(f"{self.api_url}/pinning/pinJSONToIPFS", json=body,
                                  headers={"Authorization": f"Bearer {self.jwt}"}, timeout=self.timeout)
        except requests.RequestException as e:
            raise PinningError(str(e)) from e
        if r.status_code >= 400:
            raise PinningError(f"pinata HTTP {r.status_code}: {r.text[:200]}")
        cid = r.json().get("IpfsHash")
        if not cid:
            raise PinningError("pinata response without IpfsHash")
        logger.info("metadata_pinned", cid=cid, name=name)
        return f"ipfs://{cid}"
