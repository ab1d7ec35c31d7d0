"""Markdown to HTML conversion and the preview page template.

Conversion uses markdown-it-py with the GitHub-flavoured extensions people
expect in a README (tables, strikethrough, autolinks, task lists, heading
anchors). Raw HTML in the source is not passed through. The page embeds an
EventSource client that reloads on ``data: reload`` and treats
``data: keepalive`` as a liveness signal.
"""

from __future__ import annotations

import logging
from html import escape
from pathlib import Path

from markdown_it import MarkdownIt
from mdit_py_plugins.anchors import anchors_plugin
from mdit_py_plugins.tasklists import tasklists_plugin

logger = logging.getLogger(__name__)

_GITHUB_CSS_URL = (
    "https://cdnjs.cloudflare.com/ajax/libs/github-markdown-css/5.5.1/"
    "github-markdown.min.css"
)
_HIGHLIGHT_BASE_URL = "https://cdnjs.cloudflare.com/ajax/libs/highlight.js/11.9.0"


def _build_parser() -> MarkdownIt:
    return (
        MarkdownIt("commonmark", {"html": False, "linkify": True, "typographer": False})
        .enable(["table", "strikethrough", "linkify"])
        .use(tasklists_plugin)
        .use(anchors_plugin, max_level=6)
    )


_parser = _build_parser()


def convert_markdown(text: str) -> str:
    """Render Markdown source to an HTML fragment."""
    return _parser.render(text)


_PAGE_CSS = """<style>
  .markdown-body {
    box-sizing: border-box;
    min-width: 200px;
    max-width: 980px;
    margin: 0 auto;
    padding: 45px;
  }
  @media (max-width: 767px) {
    .markdown-body { padding: 15px; }
  }
  pre { position: relative; }
  .copy-button {
    position: absolute;
    top: 8px;
    right: 8px;
    padding: 6px 5px;
    background-color: transparent;
    border: none;
    border-radius: 6px;
    color: #848d97;
    cursor: pointer;
  }
  .copy-button:hover { background-color: #262c36; color: #c9d1d9; }
  .copy-button .check-icon { display: none; color: #3fb950; }
  .copy-button.copied .copy-icon { display: none; }
  .copy-button.copied .check-icon { display: inline; }
</style>"""

# Live reload. The server sends "data: keepalive" every 15s, so 45s of
# silence means the stream is dead even if the browser has not noticed.
_PAGE_JS = """(function() {
  var source = null;
  var attempts = 0;
  var lastMessage = Date.now();
  var MAX_DELAY = 30000;
  var DEAD_AFTER = 45000;

  function connect() {
    if (source) { source.close(); }
    source = new EventSource('/events');
    source.onopen = function() {
      attempts = 0;
      lastMessage = Date.now();
    };
    source.onmessage = function(event) {
      lastMessage = Date.now();
      if (event.data === 'reload') {
        location.reload();
      }
    };
    source.onerror = function() {
      if (source.readyState === EventSource.CLOSED) { reconnect(); }
    };
  }

  function reconnect() {
    if (source) { source.close(); source = null; }
    var delay = Math.min(1000 * Math.pow(2, attempts), MAX_DELAY);
    attempts++;
    setTimeout(connect, delay);
  }

  connect();
  setInterval(function() {
    if (Date.now() - lastMessage > DEAD_AFTER) {
      lastMessage = Date.now();
      reconnect();
    }
  }, 5000);
  window.addEventListener('beforeunload', function() {
    if (source) { source.close(); }
  });
})();

(function() {
  function addCopyButtons() {
    document.querySelectorAll('pre').forEach(function(pre) {
      if (pre.querySelector('.copy-button')) return;
      var button = document.createElement('button');
      button.className = 'copy-button';
      button.setAttribute('aria-label', 'Copy');
      button.innerHTML = '<span class="copy-icon">Copy</span><span class="check-icon">Copied</span>';
      button.addEventListener('click', function() {
        var code = pre.querySelector('code');
        navigator.clipboard.writeText(code ? code.innerText : pre.innerText).then(function() {
          button.classList.add('copied');
          setTimeout(function() { button.classList.remove('copied'); }, 2000);
        });
      });
      pre.appendChild(button);
    });
  }
  if (typeof hljs !== 'undefined') { hljs.highlightAll(); }
  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', addCopyButtons);
  } else {
    addCopyButtons();
  }
})();"""


def build_html_page(body_html: str, title: str) -> str:
    """Wrap a rendered fragment in the full preview page."""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<meta name="color-scheme" content="light dark">
<title>{escape(title)}</title>
<link rel="stylesheet" href="{_GITHUB_CSS_URL}">
<link rel="stylesheet" href="{_HIGHLIGHT_BASE_URL}/styles/github-dark.min.css">
<script src="{_HIGHLIGHT_BASE_URL}/highlight.min.js"></script>
{_PAGE_CSS}
</head>
<body>
<article class="markdown-body">
{body_html}
</article>
<script>
{_PAGE_JS}
</script>
</body>
</html>"""


def render_file(path: Path) -> str:
    """Read ``path`` and return the complete preview page.

    Raises OSError if the file cannot be read.
    """
    text = path.read_text(encoding="utf-8", errors="replace")
    return build_html_page(convert_markdown(text), path.name or "Markdown")
