"""Debug script: fetch one URL through the clearpass pipeline.

Launches the browser configured under ``browser`` in settings and prints
what came back, so a site's challenge handling can be checked by hand.
Use a headful browser (CLEARPASS_BROWSER__HEADLESS=false) to solve manual
challenges in the window, then press Enter here ("c" + Enter cancels).
"""

import argparse
import asyncio
import sys
from urllib.parse import urlsplit


async def _answer_from_stdin(pipeline) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        if line.strip().lower() in ("c", "cancel"):
            pipeline.manual.cancel()
        else:
            pipeline.manual.complete()


async def main() -> int:
    parser = argparse.ArgumentParser(description="Fetch a URL through the clearpass pipeline.")
    parser.add_argument("url", help="Absolute URL to fetch")
    parser.add_argument("--post", metavar="BODY", help="Send a form POST with this body instead")
    parser.add_argument(
        "--bypass",
        action="store_true",
        help="Route the URL's domain through the browser even if sites.yaml does not",
    )
    parser.add_argument("--warmup", action="store_true", help="Warm the origin up first")
    args = parser.parse_args()

    from clearpass.pipeline import close_pipeline, get_pipeline
    from clearpass.utils.errors import FetchError
    from clearpass.utils.logging import configure_logging

    configure_logging(json_format=False)
    pipeline = await get_pipeline()
    answers = asyncio.create_task(_answer_from_stdin(pipeline))

    parts = urlsplit(args.url)
    origin = f"{parts.scheme}://{parts.netloc}"
    if args.bypass:
        pipeline.facade.policies.register_site("debug", origin, needs_bypass=True)

    try:
        if args.warmup:
            pipeline.warmup.warmup(origin)
            ready = await pipeline.warmup.wait_until_ready(origin, 60.0)
            print(f"warmup_ready={ready}")

        if args.post is not None:
            text = await pipeline.facade.post_form(args.url, args.post)
        else:
            text = await pipeline.facade.fetch_document(args.url)
        print(f"content_length={len(text)}")
        print(text[:500])
        print(f"cookie_domains={pipeline.cookie_store.stored_domains()}")
    except FetchError as e:
        print(f"error={e.to_dict()}")
        return 1
    finally:
        answers.cancel()
        await close_pipeline()

    return 0


if __name__ == "__main__":  # pragma: no cover (debug script)
    raise SystemExit(asyncio.run(main()))
