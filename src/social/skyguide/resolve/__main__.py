from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.skyguide.atproto.pds import IssuerResolver
from social.skyguide.errors import SkyGuideException
from social.skyguide.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve handles")
    parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--issuer",
        action="store_true",
        help="Also discover the authorization server for each subject.",
    )
    parser.add_argument(
        "--timeout", type=float, default=30.0, help="Request timeout in seconds."
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])
    plc_hostname: str = args.get("plc_hostname", "plc.directory")

    timeout = aiohttp.ClientTimeout(total=args.get("timeout"))
    async with aiohttp.ClientSession(timeout=timeout) as session:
        resolver = IssuerResolver(session, plc_hostname, "https://bsky.social")
        for subject in subjects:
            try:
                resolved_handle = await resolve_subject(session, plc_hostname, subject)
                print(f"resolved_handle {resolved_handle}")
                if args.get("issuer") and resolved_handle is not None:
                    resolved_issuer = await resolver.resolve(resolved_handle.did)
                    print(f"resolved_issuer {resolved_issuer}")
            except (SkyGuideException, aiohttp.ClientError, asyncio.TimeoutError):
                logging.exception("Exception resolving subject %s", subject)


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
