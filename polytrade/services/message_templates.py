"""
WhatsApp message templates for each recipient role.

Rendering is a pure function of (role, deal): the same deal always produces
the same text for a role.
"""
import math
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Callable

from polytrade.models.deal import DeliveryTerms, MaterialSource
from polytrade.models.message import RecipientRole
from polytrade.schemas.deal import DealData, DealValidationError

FOOTER = "---\nPolymer Trading System"


def _group_indian(digits: str) -> str:
    """Group an integer digit string the Indian way: 12,34,567."""
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups) + "," + tail


def _quantize(number: float, exponent: str) -> Decimal:
    value = Decimal(str(number))
    with localcontext() as ctx:
        # Enough digits for the whole integer part plus three decimals
        ctx.prec = max(ctx.prec, value.adjusted() + 5)
        return value.quantize(Decimal(exponent), rounding=ROUND_HALF_UP)


def format_currency(amount: float) -> str:
    """Format as whole rupees, e.g. ₹1,20,000."""
    value = _quantize(amount, "1")
    sign = "-" if value < 0 else ""
    return f"{sign}₹{_group_indian(str(abs(int(value))))}"


def format_number(num: float) -> str:
    """Format with Indian grouping and up to three decimals."""
    value = _quantize(num, "0.001")
    sign = "-" if value < 0 else ""
    integer_part, _, fraction = f"{value.copy_abs():f}".partition(".")
    fraction = fraction.rstrip("0")
    formatted = _group_indian(integer_part)
    if fraction:
        formatted += "." + fraction
    return sign + formatted


def format_percent(value: float) -> str:
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


def format_date(value) -> str:
    return value.strftime("%d %b %Y")


def calculate_deal_metrics(deal: DealData) -> dict:
    """Sale/purchase amounts, gross profit and margin (%) for a deal."""
    sale_amount = (deal.quantity_sold or 0) * (deal.sale_rate or 0)
    purchase_amount = 0.0
    if deal.material_source == MaterialSource.NEW_MATERIAL:
        purchase_amount = (deal.quantity_purchased or 0) * (deal.purchase_rate or 0)
    gross_profit = sale_amount - purchase_amount
    profit_margin = (gross_profit / sale_amount) * 100 if sale_amount > 0 else 0.0

    return {
        "sale_amount": sale_amount,
        "purchase_amount": purchase_amount,
        "gross_profit": gross_profit,
        "profit_margin": round(profit_margin, 2),
    }


def get_product_display(deal: DealData) -> str:
    if deal.product and deal.grade and deal.company:
        return f"{deal.product} - {deal.grade} ({deal.company})"
    return deal.product_code or "Product details pending"


def _is_new_material(deal: DealData) -> bool:
    return deal.material_source == MaterialSource.NEW_MATERIAL


def _is_delivered(deal: DealData) -> bool:
    return deal.delivery_terms == DeliveryTerms.DELIVERED


def render_accounts(deal: DealData) -> str:
    """Accounts: financial breakdown and bookkeeping actions."""
    metrics = calculate_deal_metrics(deal)
    lines = [
        "🏦 NEW DEAL REGISTERED",
        "",
        f"Deal ID: {deal.id}",
        f"Date: {format_date(deal.deal_date)}",
        f"Customer: {deal.sale_party}",
        "",
        "💰 FINANCIAL DETAILS:",
        f"Sale: {format_number(deal.quantity_sold)}kg × {format_currency(deal.sale_rate)}/kg"
        f" = {format_currency(metrics['sale_amount'])}",
    ]

    if _is_new_material(deal) and deal.purchase_party and deal.quantity_purchased and deal.purchase_rate:
        lines += [
            f"Purchase: {format_number(deal.quantity_purchased)}kg × {format_currency(deal.purchase_rate)}/kg"
            f" = {format_currency(metrics['purchase_amount'])}",
            f"Gross Profit: {format_currency(metrics['gross_profit'])} ({format_percent(metrics['profit_margin'])}%)",
        ]

    lines += [
        "",
        "📦 PRODUCT DETAILS:",
        get_product_display(deal),
        f"Delivery: {'Delivered' if _is_delivered(deal) else 'Ex-Warehouse (Pickup)'}",
        f"Source: {'New Purchase' if _is_new_material(deal) else 'From Inventory'}",
    ]

    if deal.purchase_party:
        lines.append(f"Supplier: {deal.purchase_party}")

    if deal.sale_comments:
        lines += ["", "💬 SALE NOTES:", deal.sale_comments]

    if deal.purchase_comments:
        lines += ["", "💬 PURCHASE NOTES:", deal.purchase_comments]

    lines += [
        "",
        "📋 ACTION REQUIRED:",
        "- Verify payment terms with customer",
        "- Coordinate with logistics for delivery",
        "- Update accounting records",
        "",
        FOOTER,
    ]
    return "\n".join(lines)


def render_logistics(deal: DealData) -> str:
    """Logistics: delivery coordination and dispatch tasks."""
    lines = [
        "🚚 DELIVERY COORDINATION REQUIRED",
        "",
        f"Deal ID: {deal.id}",
        f"Customer: {deal.sale_party}",
        f"Date: {format_date(deal.deal_date)}",
        "",
        "📦 LOGISTICS DETAILS:",
        f"Quantity: {format_number(deal.quantity_sold)}kg",
        f"Product: {get_product_display(deal)}",
        f"Delivery: {'DELIVERY REQUIRED' if _is_delivered(deal) else 'CUSTOMER PICKUP'}",
        f"Source: {'New Purchase' if _is_new_material(deal) else 'Warehouse Stock'}",
    ]

    if deal.warehouse_location:
        lines.append(f"Warehouse: {deal.warehouse_location}")

    if _is_new_material(deal) and deal.purchase_party:
        lines += [
            "",
            "🔄 COORDINATION NEEDED:",
            f"Supplier: {deal.purchase_party}",
            f"Purchase Qty: {format_number(deal.quantity_purchased or 0)}kg",
            "",
            "TASKS:",
            "- Coordinate supplier pickup/delivery",
            "- Schedule customer delivery",
            "- Ensure quantity matching",
            "- Quality check on receipt",
        ]
    else:
        lines += [
            "",
            "📋 INVENTORY DISPATCH:",
            "- Verify stock availability",
            "- Prepare material for dispatch",
            "- Schedule delivery to customer" if _is_delivered(deal) else "- Notify customer for pickup",
        ]

    if deal.final_comments:
        lines += ["", "⚠️ SPECIAL INSTRUCTIONS:", deal.final_comments]

    lines += [
        "",
        "📞 CONTACTS:",
        "- Customer coordination required",
        "- Update accounts team on delivery status",
        "",
        FOOTER,
    ]
    return "\n".join(lines)


def render_boss1(deal: DealData) -> str:
    """Boss 1: profit analysis and deal metrics."""
    metrics = calculate_deal_metrics(deal)
    lines = [
        "📊 DEAL SUMMARY - BOSS 1",
        "",
        f"Deal ID: {deal.id}",
        f"Customer: {deal.sale_party}",
        f"Product: {get_product_display(deal)}",
        "",
        "💵 PROFIT ANALYSIS:",
        f"Revenue: {format_currency(metrics['sale_amount'])}",
    ]

    if _is_new_material(deal) and metrics["purchase_amount"] > 0:
        lines += [
            f"Cost: {format_currency(metrics['purchase_amount'])}",
            f"Profit: {format_currency(metrics['gross_profit'])} ({format_percent(metrics['profit_margin'])}%)",
        ]
    else:
        lines.append("Cost: From inventory (TBD)")

    lines += [
        "",
        "📈 DEAL METRICS:",
        f"Volume: {format_number(deal.quantity_sold)}kg",
        f"Rate: {format_currency(deal.sale_rate)}/kg",
        f"Source: {'New Purchase' if _is_new_material(deal) else 'Inventory'}",
    ]

    if deal.purchase_party:
        lines.append(f"Supplier: {deal.purchase_party}")

    lines += [
        "",
        "🎯 STATUS:",
        f"Date: {format_date(deal.deal_date)}",
        f"Delivery: {'Delivery' if _is_delivered(deal) else 'Pickup'}",
        "Processing: In progress",
        "",
        "📞 TEAMS NOTIFIED:",
        "- Accounts team (financial processing)",
        "- Logistics team (coordination)",
        "",
        FOOTER,
    ]
    return "\n".join(lines)


def margin_indicator(profit_margin: float) -> str:
    if profit_margin >= 15:
        return "🟢"
    if profit_margin >= 10:
        return "🟡"
    return "🔴"


def render_bossog(deal: DealData) -> str:
    """Boss OG: short executive overview."""
    metrics = calculate_deal_metrics(deal)
    lines = [
        "👑 DEAL ALERT - BOSS OG",
        "",
        f"Deal ID: {deal.id}",
        f"Customer: {deal.sale_party}",
        "",
        "💰 QUICK OVERVIEW:",
        f"Volume: {format_number(deal.quantity_sold)}kg",
        f"Revenue: {format_currency(metrics['sale_amount'])}",
    ]

    if _is_new_material(deal) and metrics["purchase_amount"] > 0:
        lines += [
            f"Profit: {format_currency(metrics['gross_profit'])} {margin_indicator(metrics['profit_margin'])}",
            f"Margin: {format_percent(metrics['profit_margin'])}%",
        ]

    lines += [
        "",
        "📋 DETAILS:",
        f"Product: {get_product_display(deal)}",
        f"Date: {format_date(deal.deal_date)}",
        f"Source: {'Purchase' if _is_new_material(deal) else 'Stock'}",
    ]

    if deal.purchase_party:
        lines.append(f"Supplier: {deal.purchase_party}")

    lines += [
        "",
        "⚡ STATUS: Processing",
        "📱 Teams coordinating delivery",
        "",
        FOOTER,
    ]
    return "\n".join(lines)


TEMPLATES: dict[RecipientRole, Callable[[DealData], str]] = {
    RecipientRole.ACCOUNTS: render_accounts,
    RecipientRole.LOGISTICS: render_logistics,
    RecipientRole.BOSS1: render_boss1,
    RecipientRole.BOSSOG: render_bossog,
}


def _is_positive(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def _deal_problems(deal: DealData) -> list[tuple[str, str]]:
    problems = []

    if not deal.id:
        problems.append(("id", "Deal ID is required"))
    if not deal.deal_date:
        problems.append(("date", "Deal date is required"))
    if not deal.sale_party:
        problems.append(("saleParty", "Sale party (customer) is required"))
    if not _is_positive(deal.quantity_sold):
        problems.append(("quantitySold", "Quantity sold must be positive"))
    if not _is_positive(deal.sale_rate):
        problems.append(("saleRate", "Sale rate must be positive"))
    if not deal.delivery_terms:
        problems.append(("deliveryTerms", "Delivery terms are required"))
    if not deal.product_code:
        problems.append(("productCode", "Product code is required"))
    if not deal.material_source:
        problems.append(("materialSource", "Material source is required"))

    if deal.material_source == MaterialSource.NEW_MATERIAL:
        if not deal.purchase_party:
            problems.append(("purchaseParty", "Purchase party is required for new material"))
        if not _is_positive(deal.quantity_purchased):
            problems.append(("quantityPurchased", "Purchase quantity is required for new material"))
        if not _is_positive(deal.purchase_rate):
            problems.append(("purchaseRate", "Purchase rate is required for new material"))

    return problems


def validate_deal_for_messaging(deal: DealData) -> list[str]:
    """Return an itemized list of problems, empty when the deal can be rendered."""
    return [f"{field}: {message}" for field, message in _deal_problems(deal)]


def ensure_valid_deal(deal: DealData) -> None:
    """Raise DealValidationError listing every missing field."""
    problems = _deal_problems(deal)
    if problems:
        raise DealValidationError(problems)


def generate_message(role: RecipientRole | str, deal: DealData) -> str:
    """Render the message for one role."""
    try:
        template = TEMPLATES[RecipientRole(role)]
    except ValueError:
        raise ValueError(f"No message template found for role: {role}") from None

    ensure_valid_deal(deal)
    return template(deal)


def generate_all_messages(deal: DealData) -> dict[RecipientRole, str]:
    return {role: generate_message(role, deal) for role in RecipientRole}


def get_message_previews(deal: DealData) -> dict:
    """Render every role's message with length statistics."""
    messages = generate_all_messages(deal)

    return {
        "deal": {
            "id": deal.id,
            "customer": deal.sale_party,
            "amount": format_currency(calculate_deal_metrics(deal)["sale_amount"]),
        },
        "messages": {role.value: text for role, text in messages.items()},
        "stats": {role.value: {"length": len(text)} for role, text in messages.items()},
    }
