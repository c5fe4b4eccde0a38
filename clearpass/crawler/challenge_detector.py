"""Challenge page detection for the fetch pipeline."""

import re
from enum import Enum


class PageVerdict(str, Enum):
    """Classification of an extracted page."""

    GENUINE = "genuine"
    CHALLENGE = "challenge"
    INDETERMINATE = "indeterminate"  # Nothing rendered yet


_BODY_RE = re.compile(r"<body[^>]*>(.*?)</body>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>|<[^>]+>", re.IGNORECASE | re.DOTALL)


def _is_empty_document(html: str) -> bool:
    """Check whether the document has rendered nothing yet."""
    if not html or not html.strip():
        return True
    match = _BODY_RE.search(html)
    if match is None:
        return False
    body = match.group(1)
    if "<" in body and re.search(r"<(img|iframe|video|canvas|svg|form|input)\b", body, re.I):
        return False
    return not _TAG_RE.sub("", body).strip()


def is_challenge_page(content: str, headers: dict | None = None, title: str = "") -> bool:
    """Check if page is a challenge/captcha page.

    This function uses specific patterns to avoid false positives from:
    - Cookie consent banners that reference CAPTCHA services
    - Article content mentioning CAPTCHA/security topics
    - Third-party scripts with CAPTCHA-related URLs

    Args:
        content: Page content.
        headers: Response headers (direct HTTP responses only).
        title: Document title as reported by the rendering context.

    Returns:
        True if challenge detected.
    """
    content_lower = content.lower()
    headers = {k.lower(): v for k, v in (headers or {}).items()}

    # Interstitial title shown while the JS challenge runs
    if "just a moment" in title.lower() or "<title>just a moment" in content_lower:
        return True

    # Cloudflare challenge page indicators (highly specific)
    # These patterns indicate an ACTIVE challenge, not just a reference
    cloudflare_challenge_indicators = [
        "cf-browser-verification",  # Cloudflare verification element
        "challenge-running",  # Challenge stage container
        "__cf_chl_jschl_tk__",  # Legacy JS challenge token
        "cf_chl_opt",  # Cloudflare challenge options
        "checking your browser before accessing",  # Challenge text
        "please wait while we verify your browser",  # Challenge text
        "verifying you are human",  # Managed challenge banner
        "challenge-body-text",  # Managed challenge banner element
        "ray id:</strong>",  # Challenge page format (not just "cloudflare ray id")
    ]

    if any(ind in content_lower for ind in cloudflare_challenge_indicators):
        return True

    if "just a moment" in content_lower and (
        "cloudflare" in content_lower or "_cf_" in content_lower
    ):
        return True

    # CAPTCHA widget indicators (must be active widgets, not references)
    active_captcha_indicators = [
        'src="https://hcaptcha.com',  # hCaptcha iframe
        'src="https://www.hcaptcha.com',
        "data-sitekey=",  # CAPTCHA widget with sitekey
        'class="h-captcha"',  # hCaptcha container element
        'class="g-recaptcha"',  # reCAPTCHA container element
        'id="captcha-container"',  # Explicit captcha container
        "grecaptcha.execute",  # reCAPTCHA v3 execution
        "hcaptcha.execute",  # hCaptcha execution
    ]

    if any(ind in content_lower for ind in active_captcha_indicators):
        return True

    # Turnstile (Cloudflare's CAPTCHA alternative)
    turnstile_indicators = [
        'class="cf-turnstile"',
        "challenges.cloudflare.com/turnstile",
    ]

    if any(ind in content_lower for ind in turnstile_indicators):
        return True

    # Server header check - only for small pages (challenge pages are typically tiny)
    server = headers.get("server", "").lower()
    if "cloudflare" in server:
        cf_ray = headers.get("cf-ray")
        if cf_ray and len(content) < 5000:
            if "<body" in content_lower and content_lower.count("<div") < 10:
                return True

    return False


def classify(title: str, html: str) -> PageVerdict:
    """Classify an extracted page.

    Args:
        title: Document title.
        html: Serialized document markup.

    Returns:
        CHALLENGE for a bot-verification page, INDETERMINATE for a document
        that has not rendered anything yet, GENUINE otherwise.
    """
    if is_challenge_page(html or "", title=title or ""):
        return PageVerdict.CHALLENGE
    if _is_empty_document(html or ""):
        return PageVerdict.INDETERMINATE
    return PageVerdict.GENUINE


def is_challenge_response(status: int, html: str, headers: dict | None = None) -> bool:
    """Check whether a direct HTTP response is a challenge.

    Challenge walls answer with 403 or 503; the body must also carry
    challenge markers so that ordinary forbidden pages are not mistaken
    for one.

    Args:
        status: HTTP status code.
        html: Response body.
        headers: Response headers.

    Returns:
        True if the response is a challenge page.
    """
    if status not in (403, 503):
        return False
    return is_challenge_page(html or "", headers)


def detect_challenge_type(content: str) -> str:
    """Detect the specific type of challenge from page content.

    Called after is_challenge_page() returned True, so the page is known
    to be a challenge page. This determines the type.

    Args:
        content: Page HTML content.

    Returns:
        Challenge type string.
    """
    content_lower = content.lower()

    if (
        'class="cf-turnstile"' in content_lower
        or "challenges.cloudflare.com/turnstile" in content_lower
    ):
        return "turnstile"

    if 'src="https://hcaptcha.com' in content_lower or 'class="h-captcha"' in content_lower:
        return "hcaptcha"

    if 'class="g-recaptcha"' in content_lower or "grecaptcha.execute" in content_lower:
        return "recaptcha"

    if "data-sitekey=" in content_lower:
        if "hcaptcha" in content_lower:
            return "hcaptcha"
        if "recaptcha" in content_lower:
            return "recaptcha"
        return "captcha"

    cloudflare_indicators = [
        "cf-browser-verification",
        "cf_chl_opt",
        "checking your browser before accessing",
    ]
    if any(ind in content_lower for ind in cloudflare_indicators):
        return "cloudflare"

    # Generic JS challenge ("Just a moment" interstitial)
    if "just a moment" in content_lower or "challenge-running" in content_lower:
        return "js_challenge"

    return "cloudflare"  # Default for unidentified challenges


def estimate_auth_effort(challenge_type: str) -> str:
    """Estimate the effort required from the user to clear a challenge.

    Args:
        challenge_type: Type of challenge detected.

    Returns:
        Effort level: "low", "medium", or "high".
    """
    effort_map = {
        # Low: Usually auto-resolves
        "js_challenge": "low",
        "cloudflare": "low",
        # Medium: Usually just a click/checkbox
        "turnstile": "medium",
        # High: Requires significant user effort
        "captcha": "high",
        "recaptcha": "high",
        "hcaptcha": "high",
    }

    return effort_map.get(challenge_type, "medium")
