"""Catalog search adapter (FoodGraph-style REST API).

Owns its credential cache: the token is fetched on demand, refreshed before
expiry and once more when the service answers 401.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from utils.errors import (
    AUTH_ABORT_MESSAGE,
    AuthFailure,
    RateLimited,
    RetryInterrupted,
    SearchFailure,
)
from utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

AUTH_PATH = "/v1/auth/token"
SEARCH_PATH = "/v1/catalog/products/search/query"

# domain fragment -> retailer name
RETAILER_DOMAINS: Dict[str, str] = {
    "walmart.com": "walmart",
    "target.com": "target",
    "walgreens.com": "walgreens",
    "cvs.com": "cvs",
    "kroger.com": "kroger",
    "safeway.com": "safeway",
    "albertsons.com": "albertsons",
    "publix.com": "publix",
    "wholefoodsmarket.com": "whole foods",
    "traderjoes.com": "trader joe",
    "costco.com": "costco",
    "samsclub.com": "sam's club",
    "aldi.": "aldi",
    "lidl.": "lidl",
    "foodlion.com": "food lion",
    "giantfood.com": "giant",
    "stopandshop.com": "stop & shop",
}


@dataclass(frozen=True)
class Candidate:
    """One catalog entry, independent of the service payload shape."""

    candidate_id: str
    name: str
    brand: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None
    size: Optional[str] = None
    image_url: Optional[str] = None
    retailers: tuple = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "name": self.name,
            "brand": self.brand,
            "manufacturer": self.manufacturer,
            "category": self.category,
            "size": self.size,
            "image_url": self.image_url,
            "retailers": list(self.retailers),
        }


@dataclass
class CredentialCache:
    token: Optional[str] = None
    expires_at: float = 0.0

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at

    def store(self, token: str, ttl: float, now: float) -> None:
        self.token = token
        self.expires_at = now + ttl

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = 0.0


def build_search_term(info) -> str:
    """Join brand, product name and size of an ``ExtractedInfo``."""
    parts = [info.brand_name.value, info.product_name.value, info.size.value]
    return " ".join(p.strip() for p in parts if p and p.strip())


def front_image_url(product: Dict[str, Any]) -> Optional[str]:
    """Prefer the FRONT image, else the first image exposing a URL."""
    images = product.get("images") or []

    def _url(img: Dict[str, Any]) -> Optional[str]:
        urls = img.get("urls") or {}
        return urls.get("desktop") or urls.get("mobile") or urls.get("original")

    for img in images:
        if (img.get("type") or "").upper() == "FRONT" and _url(img):
            return _url(img)
    for img in images:
        if _url(img):
            return _url(img)
    return None


def retailers_from_urls(urls: Optional[List[str]]) -> List[str]:
    found: List[str] = []
    for url in urls or []:
        lowered = (url or "").lower()
        for fragment, retailer in RETAILER_DOMAINS.items():
            if fragment in lowered and retailer not in found:
                found.append(retailer)
    return found


def parse_candidate(product: Dict[str, Any]) -> Optional[Candidate]:
    keys = product.get("keys") or {}
    candidate_id = keys.get("GTIN14") or product.get("key")
    if not candidate_id:
        return None
    category = product.get("category")
    if isinstance(category, list):
        category = " > ".join(str(c) for c in category if c) or None
    return Candidate(
        candidate_id=str(candidate_id),
        name=product.get("title") or "",
        brand=product.get("companyBrand"),
        manufacturer=product.get("companyManufacturer"),
        category=category,
        size=product.get("measures"),
        image_url=front_image_url(product),
        retailers=tuple(retailers_from_urls(product.get("sourcePdpUrls"))),
        raw={
            "key": product.get("key"),
            "keys": keys,
            "ingredients": product.get("ingredients"),
            "sourcePdpUrls": product.get("sourcePdpUrls"),
        },
    )


class CatalogSearchAdapter:
    """Search the catalog by free text; shared by every batch worker."""

    def __init__(
        self,
        base_url: str,
        email: Optional[str],
        password: Optional[str],
        max_results: int = 50,
        timeout: float = 30.0,
        token_ttl: float = 23 * 60 * 60,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.max_results = max_results
        self.timeout = timeout
        self.token_ttl = token_ttl
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.clock = clock
        self.credentials = CredentialCache()
        self._lock = threading.Lock()

    # -- authentication -------------------------------------------------

    def authenticate(self, force: bool = False) -> str:
        with self._lock:
            if not force and self.credentials.is_valid(self.clock()):
                return self.credentials.token
            if not self.email or not self.password:
                raise AuthFailure("Identifiants du catalogue non configures")

            try:
                response = self.session.post(
                    self.base_url + AUTH_PATH,
                    json={
                        "email": self.email,
                        "password": self.password,
                        "includeRefreshToken": True,
                    },
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                raise SearchFailure("Authentification catalogue impossible", cause=exc) from exc

            if response.status_code in (401, 403):
                raise AuthFailure(
                    f"Authentification catalogue refusee (code {response.status_code})"
                )
            if response.status_code == 429:
                raise RateLimited("Catalog auth rate limited", _retry_after(response))
            if not response.ok:
                raise SearchFailure(
                    f"Authentification catalogue en erreur (code {response.status_code})"
                )
            try:
                token = response.json()["accessToken"]
            except (ValueError, KeyError, TypeError) as exc:
                raise SearchFailure("Reponse d'authentification invalide", cause=exc) from exc

            self.credentials.store(token, self.token_ttl, self.clock())
            logger.info("Catalog token refreshed")
            return token

    # -- search ---------------------------------------------------------

    def search(
        self, query_text: str, interrupt: Optional[threading.Event] = None
    ) -> List[Candidate]:
        """Search the catalog; ``interrupt`` is set by the caller once the batch aborted.

        No request is sent once ``interrupt`` is set, including retries that
        were waiting on a rate limit: ``AuthFailure`` with the shared abort
        cause is raised instead.
        """
        if not query_text or not query_text.strip():
            raise ValueError("query_text must not be empty")
        try:
            return self.retry_policy.call(
                self._search_once, query_text.strip(), interrupt, stop_event=interrupt
            )
        except RetryInterrupted as exc:
            raise AuthFailure(AUTH_ABORT_MESSAGE, cause=exc) from exc
        except RateLimited as exc:
            raise SearchFailure("Limite de requetes du catalogue atteinte", cause=exc) from exc

    def _search_once(
        self, query_text: str, interrupt: Optional[threading.Event] = None
    ) -> List[Candidate]:
        token = self.authenticate()
        _check_interrupt(interrupt)
        response = self._post_search(query_text, token)
        if response.status_code == 401:
            logger.info("Catalog token rejected, re-authenticating once")
            with self._lock:
                if self.credentials.token == token:
                    self.credentials.invalidate()
            token = self.authenticate()
            _check_interrupt(interrupt)
            response = self._post_search(query_text, token)
            if response.status_code == 401:
                raise AuthFailure("Jeton du catalogue refuse apres renouvellement")

        if response.status_code == 429:
            raise RateLimited("Catalog search rate limited", _retry_after(response))
        if not response.ok:
            raise SearchFailure(
                f"Recherche catalogue en erreur (code {response.status_code})"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise SearchFailure("Reponse catalogue illisible (JSON invalide)", cause=exc) from exc

        results = data.get("results") if isinstance(data, dict) else None
        candidates: List[Candidate] = []
        seen = set()
        for product in results or []:
            if not isinstance(product, dict):
                continue
            candidate = parse_candidate(product)
            if candidate is None:
                continue
            if candidate.candidate_id in seen:
                logger.debug("Dropping duplicate catalog entry %s", candidate.candidate_id)
                continue
            seen.add(candidate.candidate_id)
            candidates.append(candidate)
            if len(candidates) >= self.max_results:
                break

        logger.info("Catalog search '%s': %d candidates", query_text, len(candidates))
        return candidates

    def _post_search(self, query_text: str, token: str) -> requests.Response:
        body = {
            "productFilter": "CORE_FIELDS",
            "search": query_text,
            "searchIn": {"or": ["title"]},
            "fuzzyMatch": True,
        }
        try:
            return self.session.post(
                self.base_url + SEARCH_PATH,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise SearchFailure(f"Delai depasse apres {self.timeout:.0f}s", cause=exc) from exc
        except requests.RequestException as exc:
            raise SearchFailure("Impossible de contacter le catalogue", cause=exc) from exc


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After") if response.headers else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _check_interrupt(interrupt: Optional[threading.Event]) -> None:
    if interrupt is not None and interrupt.is_set():
        raise AuthFailure(AUTH_ABORT_MESSAGE)
