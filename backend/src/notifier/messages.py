from __future__ import annotations

from html import escape

from backend.src.contracts.models import (
    ChangeKind,
    ChannelMessage,
    NotificationEvent,
    Price,
    Product,
)

_CURRENCY_SYMBOLS: dict[str, str] = {"EUR": "€", "GBP": "£", "USD": "$"}

_CONDITION_LABELS: dict[str, str] = {
    "new": "As new",
    "excellent": "Excellent condition",
    "good": "Good condition",
    "fair": "Fair condition",
    "as-is": "Sold as is",
}


def format_amount(amount: float, currency: str) -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{amount:.2f} {currency}"
    return f"{symbol}{amount:.2f}"


def condition_label(condition: str) -> str:
    return _CONDITION_LABELS.get(condition.lower(), condition)


def _first_image(product: Product) -> str | None:
    return product.images[0] if product.images else None


def _price_line(price: Price) -> str:
    current = f"<b>{format_amount(price.current, price.currency)}</b>"
    if price.original and price.original != price.current:
        current = f"<s>{format_amount(price.original, price.currency)}</s> ➜ {current}"
    if price.discount:
        current += f" <b>(-{price.discount}%)</b>"
    return current


def render_added(store_name: str, product: Product) -> ChannelMessage:
    lines = [
        f"📍 <i>{escape(store_name)}</i>",
        "",
        f"<b>{escape(product.name)}</b>",
        "",
        f"💰 <b>Price:</b> {_price_line(product.price)}",
    ]
    if product.condition:
        lines.append(f"🏷️ <b>Condition:</b> {escape(condition_label(product.condition))}")
    if product.reason_discount:
        lines.append(f"🔥 <b>Discount reason:</b> {escape(product.reason_discount)}")
    lines.append(f"📦 <b>In box:</b> {'Yes' if product.is_in_box else 'No'}")
    if product.additional_info:
        lines.append(f"ℹ️ {escape(product.additional_info)}")
    if product.url:
        lines.extend(["", f'🔗 <a href="{escape(product.url)}">View product</a>'])

    return ChannelMessage(
        title=f"🆕 New product - {store_name}",
        body="\n".join(lines),
        photo_url=_first_image(product),
    )


def render_removed(store_name: str, product: Product) -> ChannelMessage:
    lines = [
        f"📍 <i>{escape(store_name)}</i>",
        "",
        f"<b>{escape(product.name)}</b>",
        "",
        f"💸 <b>Was:</b> {format_amount(product.price.current, product.price.currency)}",
    ]
    if product.condition:
        lines.append(f"🏷️ <b>Condition:</b> {escape(condition_label(product.condition))}")

    return ChannelMessage(
        title=f"🔴 Sold or removed - {store_name}",
        body="\n".join(lines),
        photo_url=_first_image(product),
    )


def render_price_changed(
    store_name: str,
    product: Product,
    previous: Product | None,
) -> ChannelMessage:
    currency = product.price.currency
    new_price = product.price.current
    old_price = previous.price.current if previous is not None else None

    lines = [
        f"📍 <i>{escape(store_name)}</i>",
        "",
        f"<b>{escape(product.name)}</b>",
        "",
    ]
    if old_price:
        difference = new_price - old_price
        percent = round(difference / old_price * 100)
        sign = "+" if difference > 0 else "-"
        lines.append(
            f"💵 <s>{format_amount(old_price, currency)}</s> ➜ "
            f"<b>{format_amount(new_price, currency)}</b>"
        )
        lines.append(
            f"{'🎉' if difference < 0 else '⚠️'} <b>{sign}{format_amount(abs(difference), currency)}</b> "
            f"({percent:+d}%)"
        )
        trend = "📉" if difference < 0 else "📈"
    else:
        lines.append(f"💵 <b>New price:</b> {_price_line(product.price)}")
        trend = "💰"
    if product.condition:
        lines.append(f"🏷️ <b>Condition:</b> {escape(condition_label(product.condition))}")
    if product.url:
        lines.extend(["", f'🔗 <a href="{escape(product.url)}">View product</a>'])

    return ChannelMessage(
        title=f"{trend} Price change - {store_name}",
        body="\n".join(lines),
        photo_url=_first_image(product),
    )


def render_message(event: NotificationEvent) -> ChannelMessage:
    if event.kind == ChangeKind.ADDED:
        return render_added(event.store_name, event.product)
    if event.kind == ChangeKind.REMOVED:
        return render_removed(event.store_name, event.product)
    return render_price_changed(event.store_name, event.product, event.previous)
