from site_screener.models import CrawledContent, CrawledPage
from site_screener.models.analysis_config import DEFAULT_CLASSIFY_PROMPT
from site_screener.pipeline.prompts import (
    build_classify_prompt,
    build_extract_prompt,
    content_for_extraction,
)


def test_classify_prompt_fills_placeholders():
    template = "T={title} D={description} C={content} F={footer_content} P={pages}"
    content = CrawledContent(
        title="Acme",
        content="We make pumps",
        pages=[CrawledPage(url="https://acme.com/about", title="About", type="about")],
    )
    prompt = build_classify_prompt(template, content)
    assert prompt == (
        "T=Acme D=no description C=We make pumps F=no footer information "
        "P=about: https://acme.com/about (About)"
    )


def test_classify_prompt_without_pages():
    prompt = build_classify_prompt("{pages} / {footerContent}", CrawledContent())
    assert prompt == "home page only / no footer information"


def test_default_template_has_no_unfilled_placeholders():
    prompt = build_classify_prompt(DEFAULT_CLASSIFY_PROMPT, CrawledContent(title="x", content="y"))
    for key in ("{title}", "{description}", "{content}", "{footer_content}", "{pages}"):
        assert key not in prompt


def test_extract_prompt_and_flattened_content():
    content = CrawledContent(
        title="Acme",
        content="Home text",
        footer_content="(c) Acme Ltd",
        pages=[CrawledPage(url="https://acme.com/contact", content="mail us", type="contact")],
    )
    text = content_for_extraction(content, char_limit=1000)
    assert "--- contact: https://acme.com/contact\nmail us" in text
    assert text.endswith("--- footer\n(c) Acme Ltd")
    assert content_for_extraction(content, char_limit=4) == "Acme"

    assert build_extract_prompt("Extract: {content}", "") == "Extract: no content"
