from bs4 import BeautifulSoup

from digestor.extraction.dom_scorer import extract_heuristic, looks_like_json_blob, select_fragments, score_tree
from digestor.extraction.site_profiles import detect_site_type, resolve_profile

PARAGRAPHS = [
    "The council approved the new transit plan on Tuesday, ending months of debate.",
    "Supporters argued that expanded bus service would cut commute times for thousands of residents.",
    "Critics said the budget relies on optimistic projections, and they promised to keep pushing for an audit.",
]

NEWS_PAGE = f"""
<html><head><title>Transit Plan Approved | City Times</title>
<meta name="author" content="Dana Reporter"></head>
<body>
<nav><a href="/">Home</a> <a href="/world">World</a> <a href="/sports">Sports coverage and more links</a></nav>
<div class="sidebar">Trending now: ten recipes you will love, plus our newsletter signup and more offers.</div>
<article>
  <h1>Transit Plan Approved</h1>
  <p>{PARAGRAPHS[0]}</p>
  <p>{PARAGRAPHS[1]}</p>
  <p style="display:none">Secret hidden promo text that should never appear in the extracted content.</p>
  <div aria-hidden="true">Screen reader hidden decoration text that is also quite long indeed.</div>
  <p>{PARAGRAPHS[2]}</p>
</article>
<footer>Copyright City Times. All rights reserved. Contact us for licensing and syndication.</footer>
</body></html>
"""


def test_article_content_wins_over_navigation():
    item = extract_heuristic(NEWS_PAGE, "https://citytimes.example/transit-plan")
    assert item["type"] == "article"
    assert item["title"] == "Transit Plan Approved"
    assert item["author"] == "Dana Reporter"
    for paragraph in PARAGRAPHS:
        assert paragraph in item["content"]
    for noise in ("Trending now", "Copyright", "Sports coverage", "Secret hidden", "Screen reader"):
        assert noise not in item["content"]


def test_fragments_do_not_overlap_and_keep_document_order():
    soup = BeautifulSoup(NEWS_PAGE, "html.parser")
    profile = resolve_profile("base")
    fragments, _ = score_tree(soup.body, profile, set())
    chosen = select_fragments(fragments, profile, max_fragments=5)
    assert chosen
    chosen_ids = {id(fragment.node) for fragment in chosen}
    for fragment in chosen:
        assert not ({id(parent) for parent in fragment.node.parents} & chosen_ids)
    orders = [fragment.order for fragment in chosen]
    assert orders == sorted(orders)


def test_deeply_nested_markup_does_not_recurse():
    depth = 3000
    text = "Deep content sentence that keeps going, with punctuation. " * 3
    html = "<html><body>" + "<div>" * depth + f"<p>{text}</p>" + "</div>" * depth + "</body></html>"
    item = extract_heuristic(html, "https://deep.example/page")
    assert item is not None
    assert "Deep content sentence" in item["content"]


def test_listing_pages_fall_back_to_cards():
    html = """
    <html><body>
    <article><h2><a href="/a">Alpha</a></h2><p>one</p></article>
    <article><h2><a href="/b">Beta</a></h2><p>two</p></article>
    <article><h2><a href="https://other.example/c">Gamma</a></h2></article>
    </body></html>
    """
    item = extract_heuristic(html, "https://example.com/list")
    assert item["type"] == "post"
    assert item["content"].splitlines() == [
        "Alpha: one (https://example.com/a)",
        "Beta: two (https://example.com/b)",
        "Gamma (https://other.example/c)",
    ]


def test_thin_page_returns_none():
    assert extract_heuristic("<html><body><p>hi</p></body></html>", "https://example.com") is None


def test_json_blob_detection():
    blob = '{"data": [' + ", ".join(str(i) for i in range(100)) + "]}"
    assert looks_like_json_blob(blob)
    assert not looks_like_json_blob("A normal sentence, with commas: and colons.")


def test_site_type_detection():
    assert detect_site_type("https://old.reddit.com/r/python") == "reddit"
    assert detect_site_type("https://news.ycombinator.com/item?id=1") == "hackernews"
    shop = BeautifulSoup('<div class="add-to-cart"></div>', "html.parser")
    assert detect_site_type("https://shop.example/p/1", shop) == "ecommerce"
    news = BeautifulSoup('<meta property="article:published_time" content="2024">', "html.parser")
    assert detect_site_type("https://paper.example/x", news) == "news"
    assert detect_site_type("https://plain.example/") == "base"


def test_profile_overrides_layer_over_site_profile():
    profile = resolve_profile("news", {"news": {"weights": {"TAG_BOOST": 42}}})
    assert profile.weights["TAG_BOOST"] == 42.0
    assert profile.weights["HEADING_SNIPPET_BOOST"] == 800.0

    reddit = resolve_profile("reddit")
    assert reddit.content_selectors[0] == '[data-test-id="post-content"]'
    assert "article" in reddit.content_selectors
    assert ".promoted" in reddit.skip_selectors and "nav" in reddit.skip_selectors
