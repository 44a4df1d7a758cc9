from linkmend.jobs.extractor import ContentKind, RawLink, build_extension_map, extract_links, find_links_in_content


def test_extract_links_keeps_file_then_line_order_and_duplicates() -> None:
    files = [
        ("README.md", "intro https://example.com/one\nsee https://example.com/two and https://example.com/one\n"),
        ("docs/guide.txt", "https://example.com/three\n"),
    ]

    links = list(extract_links(files))

    assert [(link.file_path, link.line_number, link.url) for link in links] == [
        ("README.md", 1, "https://example.com/one"),
        ("README.md", 2, "https://example.com/two"),
        ("README.md", 2, "https://example.com/one"),
        ("docs/guide.txt", 1, "https://example.com/three"),
    ]
    assert links[1].line_content == "see https://example.com/two and https://example.com/one"
    assert links[2].column == links[1].line_content.index("https://example.com/one")


def test_extract_links_is_lazy_and_skips_unrecognized_extensions() -> None:
    files = [("main.py", "URL = 'https://example.com/py'\n"), ("index.html", '<a href="https://example.com/a">a</a>')]

    links = extract_links(files)

    assert iter(links) is links
    assert [link.url for link in links] == ["https://example.com/a"]


def test_markdown_links_trim_trailing_punctuation_but_keep_balanced_parens() -> None:
    content = (
        "Read [the docs](https://example.com/docs).\n"
        "Wiki: https://en.wikipedia.org/wiki/Rust_(programming_language), neat.\n"
        "Autolink <https://example.com/auto> and `https://example.com/code`\n"
        "Relative [link](./docs/setup.md) is ignored.\n"
    )

    urls = [link.url for link in find_links_in_content(content, "README.md", ContentKind.MARKDOWN)]

    assert urls == [
        "https://example.com/docs",
        "https://en.wikipedia.org/wiki/Rust_(programming_language)",
        "https://example.com/auto",
        "https://example.com/code",
    ]


def test_script_and_html_urls_stop_at_quotes() -> None:
    script = "const api = \"https://api.example.com/v1/items\"; fetch(`https://cdn.example.com/lib.js`)\n"
    html = "<img src='https://example.com/logo.png'><a href=\"https://example.com/about\">About</a>\n"

    script_urls = [link.url for link in find_links_in_content(script, "app.ts", ContentKind.SCRIPT)]
    html_urls = [link.url for link in find_links_in_content(html, "index.html", ContentKind.HTML)]

    assert script_urls == ["https://api.example.com/v1/items", "https://cdn.example.com/lib.js"]
    assert html_urls == ["https://example.com/logo.png", "https://example.com/about"]


def test_loopback_and_ip_urls_are_skipped() -> None:
    content = """
    http://192.168.1.1/path?param=value
    this is localhost ip address http://127.0.0.1
    front server http://localhost:3000
    real one https://example.com/path?param=value
    """

    links = list(find_links_in_content(content, "notes.txt", ContentKind.TEXT))

    assert [link.url for link in links] == ["https://example.com/path?param=value"]
    assert links[0].line_number == 5


def test_configured_extensions_map_unknown_types_to_text() -> None:
    mapping = build_extension_map(["md", ".RST", ".tsx"])

    assert mapping == {".md": ContentKind.MARKDOWN, ".rst": ContentKind.TEXT, ".tsx": ContentKind.SCRIPT}
    links = list(extract_links([("docs/index.rst", "see https://example.com/rst")], extensions=[".rst"]))
    assert links == [
        RawLink(
            file_path="docs/index.rst",
            line_number=1,
            line_content="see https://example.com/rst",
            url="https://example.com/rst",
            column=4,
        )
    ]


def test_crlf_line_endings_do_not_leak_into_line_content() -> None:
    links = list(find_links_in_content("a\r\nlink https://example.com/x\r\n", "a.txt", ContentKind.TEXT))

    assert links[0].line_content == "link https://example.com/x"
    assert links[0].url == "https://example.com/x"


def test_internationalized_hosts_are_kept() -> None:
    content = "Stadt https://münchen.de/rathaus and shop https://пример.рф/каталог\nbad https://exa..mple.com/x\n"

    urls = [link.url for link in find_links_in_content(content, "notes.txt", ContentKind.TEXT)]

    assert urls == ["https://münchen.de/rathaus", "https://пример.рф/каталог"]
