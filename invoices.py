from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import Integer, cast, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from errors import DownloadLimitError, NotFoundError
from models import DownloadQuota, Invoice, InvoiceItem, InvoiceStatus
from recurrence import local_today
from schemas import InvoiceIn, InvoiceItemIn


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
PDF_QUOTA_KIND = "invoice_pdf"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)
_env.filters["money"] = lambda value: f"{Decimal(value):,.2f}"


def next_invoice_number(session: Session, on_date: date) -> str:
    prefix = f"INV-{on_date:%Y%m%d}-"
    # soft-deleted invoices keep their numbers
    last = session.scalar(
        select(
            func.max(cast(func.substr(Invoice.invoice_number, len(prefix) + 1), Integer))
        ).where(Invoice.invoice_number.like(f"{prefix}%"))
    )
    sequence = (last or 0) + 1
    return f"{prefix}{sequence:04d}"


def mark_overdue(session: Session, today: Optional[date] = None) -> int:
    today = today or local_today()
    result = session.execute(
        update(Invoice)
        .where(
            Invoice.status == InvoiceStatus.sent,
            Invoice.due_date < today,
            Invoice.deleted_at.is_(None),
        )
        .values(status=InvoiceStatus.overdue)
    )
    session.commit()
    logger.info(f"invoices_marked_overdue: count={result.rowcount} today={today}")
    return result.rowcount


def render_invoice_html(invoice: Invoice) -> str:
    return _env.get_template("invoice_pdf.html").render(invoice=invoice)


def _html_to_pdf(html: str) -> bytes:
    try:
        from weasyprint import HTML
    except Exception as exc:
        raise RuntimeError(
            "PDF export requires WeasyPrint system dependencies; install them for your OS and retry."
        ) from exc
    return HTML(string=html).write_pdf()


class InvoiceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, invoice_id: int) -> Invoice:
        invoice = self.session.scalar(
            select(Invoice)
            .options(selectinload(Invoice.items))
            .where(
                Invoice.id == invoice_id,
                Invoice.user_id == self.user_id,
                Invoice.deleted_at.is_(None),
            )
        )
        if invoice is None:
            raise NotFoundError("Invoice not found")
        return invoice

    def list(
        self,
        *,
        status: Optional[InvoiceStatus] = None,
        query: Optional[str] = None,
        limit: int = 15,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        stmt = select(Invoice).where(
            Invoice.user_id == self.user_id, Invoice.deleted_at.is_(None)
        )
        if status is not None:
            stmt = stmt.where(Invoice.status == status)
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(
                or_(Invoice.invoice_number.ilike(pattern), Invoice.to_name.ilike(pattern))
            )
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = (
            stmt.options(selectinload(Invoice.items))
            .order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt)), int(total)

    @staticmethod
    def _apply(invoice: Invoice, data: InvoiceIn) -> None:
        for field in (
            "invoice_date",
            "due_date",
            "from_name",
            "from_address",
            "from_email",
            "from_phone",
            "to_name",
            "to_address",
            "to_email",
            "tax_rate",
            "notes",
        ):
            setattr(invoice, field, getattr(data, field))
        invoice.items = [
            InvoiceItem(
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                sort_order=index,
            )
            for index, item in enumerate(data.items)
        ]
        invoice.calculate_totals()

    def create(self, data: InvoiceIn, today: Optional[date] = None) -> Invoice:
        invoice = Invoice(
            user_id=self.user_id,
            invoice_number=next_invoice_number(self.session, today or local_today()),
            status=InvoiceStatus.draft,
        )
        self._apply(invoice, data)
        self.session.add(invoice)
        self.session.commit()
        logger.info(f"invoice_created: number={invoice.invoice_number} total={invoice.total}")
        return invoice

    def update(self, invoice_id: int, data: InvoiceIn) -> Invoice:
        invoice = self.get(invoice_id)
        self._apply(invoice, data)
        invoice.status = data.status
        self.session.commit()
        return invoice

    def add_item(self, invoice_id: int, data: InvoiceItemIn) -> InvoiceItem:
        invoice = self.get(invoice_id)
        next_order = max((item.sort_order for item in invoice.items), default=-1) + 1
        item = InvoiceItem(
            description=data.description,
            quantity=data.quantity,
            unit_price=data.unit_price,
            sort_order=next_order,
        )
        invoice.items.append(item)
        invoice.calculate_totals()
        self.session.commit()
        return item

    def _item(self, invoice: Invoice, item_id: int) -> InvoiceItem:
        for item in invoice.items:
            if item.id == item_id:
                return item
        raise NotFoundError("Invoice item not found")

    def update_item(self, invoice_id: int, item_id: int, data: InvoiceItemIn) -> InvoiceItem:
        invoice = self.get(invoice_id)
        item = self._item(invoice, item_id)
        item.description = data.description
        item.quantity = data.quantity
        item.unit_price = data.unit_price
        invoice.calculate_totals()
        self.session.commit()
        return item

    def remove_item(self, invoice_id: int, item_id: int) -> Invoice:
        invoice = self.get(invoice_id)
        item = self._item(invoice, item_id)
        if len(invoice.items) == 1:
            raise ValueError("An invoice needs at least one item")
        invoice.items.remove(item)
        invoice.calculate_totals()
        self.session.commit()
        return invoice

    def set_status(self, invoice_id: int, status: InvoiceStatus) -> Invoice:
        invoice = self.get(invoice_id)
        invoice.status = status
        self.session.commit()
        return invoice

    def soft_delete(self, invoice_id: int) -> None:
        invoice = self.get(invoice_id)
        invoice.deleted_at = datetime.utcnow()
        self.session.commit()

    def _quota(self, day: date) -> DownloadQuota:
        quota = self.session.scalar(
            select(DownloadQuota).where(
                DownloadQuota.user_id == self.user_id,
                DownloadQuota.kind == PDF_QUOTA_KIND,
                DownloadQuota.day == day,
            )
        )
        if quota is None:
            quota = DownloadQuota(user_id=self.user_id, kind=PDF_QUOTA_KIND, day=day, count=0)
            self.session.add(quota)
        return quota

    def render_pdf(self, invoice_id: int, today: Optional[date] = None) -> tuple[str, bytes]:
        invoice = self.get(invoice_id)
        limit = get_settings().pdf_daily_limit
        quota = self._quota(today or local_today())
        if quota.count >= limit:
            raise DownloadLimitError(f"Daily PDF download limit reached ({limit} per day).")
        pdf_bytes = _html_to_pdf(render_invoice_html(invoice))
        quota.count += 1
        self.session.commit()
        logger.info(
            f"invoice_pdf: number={invoice.invoice_number} bytes={len(pdf_bytes)} "
            f"downloads_today={quota.count}"
        )
        return f"invoice-{invoice.invoice_number}.pdf", pdf_bytes

    def report(self, start: date, end: date) -> dict[str, object]:
        if start > end:
            raise ValueError("Start date must be before end date")
        invoices = self.session.scalars(
            select(Invoice).where(
                Invoice.user_id == self.user_id,
                Invoice.deleted_at.is_(None),
                Invoice.invoice_date.between(start, end),
            )
        ).all()

        by_status: dict[str, dict[str, object]] = {}
        by_client: dict[str, dict[str, object]] = defaultdict(
            lambda: {"total": Decimal("0"), "count": 0}
        )
        trend: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        invoiced = paid = pending = Decimal("0")
        for invoice in invoices:
            total = Decimal(invoice.total)
            status = by_status.setdefault(
                invoice.status.value, {"total": Decimal("0"), "count": 0}
            )
            status["total"] += total
            status["count"] += 1
            by_client[invoice.to_name]["total"] += total
            by_client[invoice.to_name]["count"] += 1
            invoiced += total
            if invoice.status == InvoiceStatus.paid:
                paid += total
                trend[invoice.invoice_date.strftime("%Y-%m")] += total
            elif invoice.status != InvoiceStatus.cancelled:
                pending += total

        clients = sorted(by_client.items(), key=lambda item: item[1]["total"], reverse=True)[:10]
        client_total = sum((values["total"] for _, values in clients), Decimal("0"))
        return {
            "summary": {
                "total_invoiced": invoiced,
                "total_paid": paid,
                "total_pending": pending,
                "invoice_count": len(invoices),
            },
            "by_status": by_status,
            "by_client": [
                {
                    "name": name,
                    "total": values["total"],
                    "count": values["count"],
                    "percentage": (
                        round(float(values["total"] / client_total * 100), 1)
                        if client_total
                        else 0
                    ),
                }
                for name, values in clients
            ],
            "income_trend": [
                {"month": month, "total": trend[month]} for month in sorted(trend)
            ],
        }
