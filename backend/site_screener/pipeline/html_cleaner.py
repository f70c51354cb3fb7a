"""
HTML 清理与页面摘要

把抓取到的 HTML 变成 AI 分类所需的纯文本：标题、描述、正文、页脚，
并找出同站的 about / contact / privacy / terms 页面以便继续抓取。
"""
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Comment
from pydantic import BaseModel


class PageSummary(BaseModel):
    title: str = ""
    description: str = ""
    text: str = ""
    footer: str = ""


class HtmlCleaner:
    """Lightweight HTML preprocessing for classification prompts."""

    # 对分类没有语义价值的标签
    JUNK_TAGS = ["style", "script", "svg", "path", "noscript", "iframe", "canvas", "template"]

    # 链接分类关键词，按优先级排列
    PAGE_KEYWORDS = {
        "about": ["about", "company", "who-we-are", "our-story", "关于", "公司简介"],
        "contact": ["contact", "get-in-touch", "联系"],
        "privacy": ["privacy", "隐私"],
        "terms": ["terms", "legal", "imprint", "impressum", "条款"],
    }

    @staticmethod
    def _soup(html: str) -> BeautifulSoup:
        soup = BeautifulSoup(html, "html.parser")
        for tag_name in HtmlCleaner.JUNK_TAGS:
            for tag in soup.find_all(tag_name):
                tag.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()
        return soup

    @staticmethod
    def _collapse(text: str) -> str:
        text = re.sub(r"[ \t\r\f\v]+", " ", text)
        text = re.sub(r"\n\s*\n+", "\n", text)
        return text.strip()

    @staticmethod
    def summarize(html: str, char_limit: int | None = None) -> PageSummary:
        """
        Extract the page title, meta description, visible text and footer text.

        Args:
            html: raw page HTML
            char_limit: optional cap applied to text and footer

        Returns:
            PageSummary with whitespace collapsed
        """
        soup = HtmlCleaner._soup(html)

        title = soup.title.get_text(strip=True) if soup.title else ""
        if not title:
            h1 = soup.find("h1")
            title = h1.get_text(strip=True) if h1 else ""

        description = ""
        for attrs in ({"name": "description"}, {"property": "og:description"}):
            meta = soup.find("meta", attrs=attrs)
            if meta and meta.get("content"):
                description = meta["content"].strip()
                break

        footer = ""
        footer_tags = soup.find_all("footer")
        if footer_tags:
            footer = HtmlCleaner._collapse("\n".join(tag.get_text("\n") for tag in footer_tags))
            for tag in footer_tags:
                tag.decompose()

        body = soup.body or soup
        text = HtmlCleaner._collapse(body.get_text("\n"))

        if char_limit is not None:
            text = text[:char_limit]
            footer = footer[:char_limit]
        return PageSummary(title=title, description=description, text=text, footer=footer)

    @staticmethod
    def classify_link(href: str, label: str) -> str | None:
        haystack = f"{href} {label}".lower()
        for page_type, keywords in HtmlCleaner.PAGE_KEYWORDS.items():
            if any(keyword in haystack for keyword in keywords):
                return page_type
        return None

    @staticmethod
    def find_related_links(html: str, base_url: str, limit: int = 3) -> list[tuple[str, str]]:
        """
        Same-site links that look like about, contact, privacy or terms pages.

        Returns at most one link per page type, ``(page_type, absolute_url)``, in
        the order of PAGE_KEYWORDS.
        """
        if limit <= 0:
            return []
        soup = BeautifulSoup(html, "html.parser")
        base_host = urlparse(base_url).hostname or ""
        found: dict[str, str] = {}
        for a in soup.find_all("a", href=True):
            href = a["href"].strip()
            if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
                continue
            absolute = urljoin(base_url, href).split("#")[0]
            parsed = urlparse(absolute)
            if parsed.scheme not in ("http", "https"):
                continue
            host = parsed.hostname or ""
            if host.removeprefix("www.") != base_host.removeprefix("www."):
                continue
            if absolute.rstrip("/") == base_url.rstrip("/"):
                continue
            page_type = HtmlCleaner.classify_link(href, a.get_text(" ", strip=True))
            if page_type and page_type not in found:
                found[page_type] = absolute
        ordered = [(t, found[t]) for t in HtmlCleaner.PAGE_KEYWORDS if t in found]
        return ordered[:limit]
