"""Author notice formatting.

Builds the HTML reply posted under an imported channel post, plus the
inline keyboard pointing at the listing page.
"""

from __future__ import annotations

import html

from listingfeed.core.models import PendingNotice

NOTICE_TITLE_CHARS = 100


def listing_url(app_url: str, listing_id: int) -> str:
    return f"{app_url.rstrip('/')}/listings/{listing_id}"


def format_author_notice(notice: PendingNotice, app_url: str, site_name: str = "Svoi") -> tuple[str, dict]:
    """Return ``(html_text, reply_markup)`` for one pending notice."""

    title = html.escape(notice.title[:NOTICE_TITLE_CHARS])
    site = html.escape(site_name)

    parts = [
        f"🔔 <b>Ваше объявление теперь на {site}!</b>",
        "",
        f"<i>{title}</i>",
        "",
        f"{site} — доска объявлений для русскоязычных в Белграде. "
        "Нажмите кнопку ниже чтобы открыть, отредактировать или удалить объявление.",
        "",
        "<b>Как управлять объявлением?</b>",
        "Откройте ссылку → нажмите «Это моё объявление» → получите полный доступ.",
    ]

    reply_markup = {
        "inline_keyboard": [
            [{"text": "Открыть объявление →", "url": listing_url(app_url, notice.listing_id)}],
        ],
    }
    return "\n".join(parts), reply_markup
