from site_screener.models import CrawledContent

CLASSIFY_SYSTEM_PROMPT = (
    "You are a professional website analysis assistant who is good at judging "
    "whether a website belongs to a target customer."
)
EXTRACT_SYSTEM_PROMPT = "You are a data extraction expert. Reply with JSON only."

PLACEHOLDERS = {
    "title": "no title",
    "description": "no description",
    "content": "no content",
    "footer_content": "no footer information",
    "pages": "home page only",
}


def summarize_pages(content: CrawledContent) -> str:
    if not content.pages:
        return ""
    return "\n".join(f"{page.type}: {page.url} ({page.title})" for page in content.pages)


def build_classify_prompt(template: str, content: CrawledContent) -> str:
    values = {
        "title": content.title,
        "description": content.description,
        "content": content.content,
        "footer_content": content.footer_content,
        "pages": summarize_pages(content),
    }
    prompt = template
    for key, value in values.items():
        prompt = prompt.replace(f"{{{key}}}", value or PLACEHOLDERS[key])
    # 兼容旧模板里的驼峰占位符
    return prompt.replace("{footerContent}", values["footer_content"] or PLACEHOLDERS["footer_content"])


def build_extract_prompt(template: str, content: str) -> str:
    return template.replace("{content}", content or PLACEHOLDERS["content"])


def content_for_extraction(content: CrawledContent, char_limit: int) -> str:
    """Flatten crawled pages into one text block for email and company extraction."""
    parts = [content.title or "", content.description or "", content.content or ""]
    for page in content.pages or []:
        if page.content:
            parts.append(f"--- {page.type}: {page.url}\n{page.content}")
    if content.footer_content:
        parts.append(f"--- footer\n{content.footer_content}")
    return "\n\n".join(p for p in parts if p)[:char_limit]
