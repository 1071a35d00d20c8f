import argparse
import asyncio
import shutil
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional, Set

import httpx
from playwright.async_api import async_playwright

_SITEMAP_NS = "{http://www.sitemaps.org/schemas/sitemap/0.9}"


class CrawlError(RuntimeError):
    pass


class CrawlResult:
    """Rendered pages of one crawl, one PDF per page, in a temporary directory.

    The directory is removed on ``cleanup`` (or when used as a context manager)
    once the caller has consumed the files.
    """

    def __init__(self, temp_dir: Path, paths: List[Path]) -> None:
        self.temp_dir = temp_dir
        self.paths = paths

    def cleanup(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def __enter__(self) -> "CrawlResult":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()


def _locs(root: ET.Element) -> List[str]:
    out: List[str] = []
    for loc in root.iter():
        if loc.tag in (f"{_SITEMAP_NS}loc", "loc") and loc.text and loc.text.strip():
            out.append(loc.text.strip())
    return out


async def fetch_sitemap_urls(
    client: httpx.AsyncClient, sitemap_url: str, max_depth: int = 3
) -> List[str]:
    """Page URLs listed in ``sitemap_url``, following nested sitemap indexes."""
    pages: List[str] = []
    seen: Set[str] = set()

    async def visit(url: str, depth: int) -> None:
        if url in seen or depth > max_depth:
            return
        seen.add(url)
        rsp = await client.get(url)
        rsp.raise_for_status()
        try:
            root = ET.fromstring(rsp.content)
        except ET.ParseError as exc:
            raise CrawlError(f"Invalid sitemap at {url}: {exc}") from exc
        if root.tag.endswith("sitemapindex"):
            for child in _locs(root):
                await visit(child, depth + 1)
            return
        for page in _locs(root):
            if page not in pages:
                pages.append(page)

    await visit(sitemap_url, 0)
    return pages


class SiteCrawler:
    def __init__(self, timeout_ms: int = 30000, headless: bool = True) -> None:
        self.timeout_ms = timeout_ms
        self.headless = headless

    async def crawl(self, url: str) -> CrawlResult:
        base = url.rstrip("/")
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            sites = await fetch_sitemap_urls(client, f"{base}/sitemap.xml")

        temp_dir = Path(tempfile.mkdtemp(prefix="sitechat-crawl-"))
        paths: List[Path] = []
        try:
            async with async_playwright() as pw:
                browser = await pw.chromium.launch(headless=self.headless)
                try:
                    # TODO: render pages concurrently with a bounded pool of contexts.
                    for site in sites:
                        page = await browser.new_page()
                        try:
                            await page.goto(site, wait_until="networkidle", timeout=self.timeout_ms)
                            path = temp_dir / f"{len(paths)}.pdf"
                            await page.pdf(path=str(path), format="A4")
                        finally:
                            await page.close()
                        paths.append(path)
                finally:
                    await browser.close()
        except BaseException:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise
        return CrawlResult(temp_dir, paths)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Render every page in a site's sitemap to PDF")
    parser.add_argument("url", help="Site root; <url>/sitemap.xml is crawled")
    parser.add_argument("--out", default="crawl_output", help="Directory for the rendered PDFs")
    parser.add_argument("--timeout-ms", type=int, default=30000, help="Per-page load timeout")
    args = parser.parse_args(argv)

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    crawler = SiteCrawler(timeout_ms=args.timeout_ms)
    with asyncio.run(crawler.crawl(args.url)) as result:
        for path in result.paths:
            shutil.copy(path, out_dir / path.name)
    print(f"[crawl] saved {len(result.paths)} page(s) to {out_dir}")


if __name__ == "__main__":
    main()
