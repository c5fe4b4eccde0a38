"""
In-page scripts executed by the dispatcher.

Each script is a JavaScript function source passed to the rendering
context's evaluate(); its return value is the script's message. Every
message carries a ``type`` discriminator.
"""

# Serializes the loaded document.
# Message: {type: "html", html, title, url, origin} or {type: "error", error}
EXTRACT_PAGE_JS = """
() => {
  try {
    return {
      type: 'html',
      html: document.documentElement ? document.documentElement.outerHTML : '',
      title: document.title || '',
      url: window.location.href,
      origin: window.location.origin
    };
  } catch (e) {
    return { type: 'error', error: String(e && e.message || e) };
  }
}
"""

# Confirms the context sits on an origin before scripted requests run there.
# Message: {type: "domainReady", url, origin}
ORIGIN_READY_JS = """
() => ({
  type: 'domainReady',
  url: window.location.href,
  origin: window.location.origin
})
"""

# Sends a credentialed POST from inside the page so the site's cookies and
# TLS fingerprint are the browser's own. The body is resolved whatever the
# status code.
# Arg: {url, body, headers}
# Message: {type: "postResponse", status, html, url} or {type: "postError", error, url}
SCRIPTED_POST_JS = """
async ({ url, body, headers }) => {
  try {
    const response = await fetch(url, {
      method: 'POST',
      headers: headers,
      body: body,
      credentials: 'include'
    });
    const html = await response.text();
    return { type: 'postResponse', status: response.status, html: html, url: url };
  } catch (e) {
    return { type: 'postError', error: String(e && e.message || e), url: url };
  }
}
"""

DEFAULT_POST_HEADERS = {"X-Requested-With": "XMLHttpRequest"}


def post_arg(url: str, body: str | None, headers: dict[str, str] | None) -> dict:
    """Build the argument object for SCRIPTED_POST_JS.

    Caller headers override the defaults.
    """
    return {
        "url": url,
        "body": body or "",
        "headers": {**DEFAULT_POST_HEADERS, **(headers or {})},
    }
