from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from urllib.parse import quote

from app.core.config import Settings
from app.ticketing.models import CustomerQuotation
from app.ticketing.schemas import RenderedEmail, RenderedWhatsApp
from app.ticketing.sequence import sequence_label


_NON_DIGITS = re.compile(r"\D")
_CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥"}


@dataclass(frozen=True)
class ChannelSettings:
    public_base_url: str
    company_name: str
    company_legal_name: str
    company_phone: str
    company_address: str
    company_email: str
    default_phone_country_code: str = "62"

    @classmethod
    def from_settings(cls, settings: Settings) -> ChannelSettings:
        return cls(
            public_base_url=settings.public_base_url.rstrip("/"),
            company_name=settings.company_name,
            company_legal_name=settings.company_legal_name,
            company_phone=settings.company_phone,
            company_address=settings.company_address,
            company_email=settings.company_email,
            default_phone_country_code=settings.default_phone_country_code,
        )


@dataclass(frozen=True)
class SenderProfile:
    name: str
    email: str


def format_currency(amount: Decimal | int | float | None, currency: str = "IDR") -> str:
    value = Decimal(str(amount or 0))
    if value == value.to_integral_value():
        number = f"{value:,.0f}"
    else:
        number = f"{value:,.2f}"
    symbol = _CURRENCY_SYMBOLS.get(currency.upper())
    if symbol:
        return f"{symbol}{number}"
    return f"{currency.upper()} {number}"


def format_date(value: date | datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d %B %Y")


def greeting_for(moment: datetime) -> str:
    if moment.hour < 11:
        return "Selamat pagi"
    if moment.hour < 15:
        return "Selamat siang"
    if moment.hour < 18:
        return "Selamat sore"
    return "Selamat malam"


def _customer_sequence(quotation: CustomerQuotation) -> str:
    return sequence_label(quotation.sequence_number, quotation.previous_rejected_count, locale="id")


class ChannelRenderer:
    """Builds the customer-facing email and WhatsApp payloads for a quotation."""

    def __init__(self, settings: ChannelSettings):
        self.settings = settings

    def pdf_url(self, quotation: CustomerQuotation) -> str:
        return f"{self.settings.public_base_url}/api/ticketing/customer-quotations/{quotation.id}/pdf"

    def validation_url(self, quotation: CustomerQuotation) -> str:
        return f"{self.settings.public_base_url}/quotation-verify/{quotation.validation_code}"

    def sender_for(self, quotation: CustomerQuotation) -> SenderProfile:
        creator = quotation.creator
        if creator is not None:
            return SenderProfile(name=creator.name, email=creator.email or self.settings.company_email)
        return SenderProfile(name=f"{self.settings.company_name} Sales", email=self.settings.company_email)

    def normalize_phone(self, phone: str | None) -> str | None:
        """Digits-only international form used by wa.me links.

        A leading trunk ``0`` is replaced by the default country code, which is
        also prefixed when missing.
        """
        if not phone:
            return None
        digits = _NON_DIGITS.sub("", phone)
        if not digits:
            return None
        code = self.settings.default_phone_country_code
        if digits.startswith("0"):
            return code + digits[1:]
        if not digits.startswith(code):
            return code + digits
        return digits

    def render_whatsapp(
        self,
        quotation: CustomerQuotation,
        pdf_url: str,
        *,
        now: datetime | None = None,
    ) -> RenderedWhatsApp:
        sender = self.sender_for(quotation)
        first_name = (quotation.customer_name or "").split(" ")[0] or "Bapak/Ibu"
        service_info = f" untuk layanan {quotation.service_type}" if quotation.service_type else ""
        route_info = ""
        if quotation.origin_city and quotation.destination_city:
            route_info = f" rute {quotation.origin_city} - {quotation.destination_city}"

        text = "\n".join(
            [
                f"{greeting_for(now or datetime.now())} {first_name},",
                "",
                f"Terima kasih atas kepercayaan Anda pada {self.settings.company_name}.",
                "",
                f"Berikut kami sampaikan penawaran harga{service_info}{route_info}:",
                "",
                f"📋 *No. Quotation:* {quotation.quotation_number}",
                f"🔖 *Urutan:* {_customer_sequence(quotation)}",
                f"💰 *Total:* {format_currency(quotation.total_selling_rate, quotation.currency)}",
                f"📅 *Berlaku hingga:* {format_date(quotation.valid_until)}",
                "",
                "📎 *Detail lengkap dapat dilihat di:*",
                pdf_url,
                "",
                "Mohon konfirmasi jika ada pertanyaan atau membutuhkan informasi tambahan. Kami siap membantu!",
                "",
                "Terima kasih 🙏",
                "",
                "Best regards,",
                f"*{sender.name}*",
                "Sales & Commercial Executive",
                self.settings.company_name,
                f"📞 {self.settings.company_phone}",
            ]
        )

        phone = self.normalize_phone(quotation.customer_phone)
        url = f"https://wa.me/{phone}?text={quote(text, safe='')}" if phone else None
        return RenderedWhatsApp(text=text, url=url)

    def render_email(
        self,
        quotation: CustomerQuotation,
        recipient: str,
        validation_url: str,
    ) -> RenderedEmail:
        subject = f"Penawaran Harga - {quotation.quotation_number} | {self.settings.company_name}"
        return RenderedEmail(
            subject=subject,
            html=self._email_html(quotation, validation_url),
            text=self._email_text(quotation, validation_url),
            recipient=recipient,
        )

    def _email_text(self, quotation: CustomerQuotation, validation_url: str) -> str:
        sender = self.sender_for(quotation)
        company = self.settings.company_name
        customer = quotation.customer_name or "Bapak/Ibu"
        if quotation.customer_company:
            customer = f"{customer}, {quotation.customer_company}"
        route_info = ""
        if quotation.origin_city and quotation.destination_city:
            route_info = f" dari {quotation.origin_city} ke {quotation.destination_city}"
        ticket = quotation.ticket

        lines = [
            f"{company} - Quotation {quotation.quotation_number}",
            "",
            f"Yth. {customer},",
            "",
            f"Terima kasih atas kepercayaan Anda kepada {company}. Dengan senang hati kami sampaikan penawaran harga "
            f"untuk layanan {quotation.service_type or 'pengiriman barang'}{route_info}.",
            "",
            f"No. Quotation: {quotation.quotation_number}",
            f"Urutan: {_customer_sequence(quotation)}",
            f"Tanggal: {format_date(quotation.created_at)}",
        ]
        if ticket is not None:
            lines.append(f"Reference: {ticket.ticket_code}")
        lines.extend(
            [
                "",
                f"TOTAL PENAWARAN: {format_currency(quotation.total_selling_rate, quotation.currency)}",
                "",
                f"Validitas: Penawaran ini berlaku selama {quotation.validity_days} hari sejak tanggal penerbitan "
                f"(hingga {format_date(quotation.valid_until)}).",
                "",
                f"Detail lengkap dapat dilihat di: {validation_url}",
                "",
                "Jika memiliki pertanyaan atau membutuhkan informasi tambahan, silakan menghubungi kami.",
                "",
                "Hormat kami,",
                sender.name,
                "Sales & Commercial Executive",
                company,
                f"Email: {sender.email}",
                f"Tel: {self.settings.company_phone}",
                "",
                "---",
                self.settings.company_legal_name,
                self.settings.company_address,
            ]
        )
        return "\n".join(lines)

    def _email_html(self, quotation: CustomerQuotation, validation_url: str) -> str:
        esc = html.escape
        sender = self.sender_for(quotation)
        company = esc(self.settings.company_name)
        customer = esc(quotation.customer_name or "Bapak/Ibu")
        if quotation.customer_company:
            customer = f"{customer},<br/>{esc(quotation.customer_company)}"
        route_info = ""
        if quotation.origin_city and quotation.destination_city:
            route_info = f" dari {esc(quotation.origin_city)} ke {esc(quotation.destination_city)}"
        service_info = esc(quotation.service_type or "pengiriman barang")
        total = esc(format_currency(quotation.total_selling_rate, quotation.currency))
        ticket = quotation.ticket
        reference = f"<p><strong>Reference:</strong> {esc(ticket.ticket_code)}</p>" if ticket is not None else ""

        if quotation.items:
            rows = "".join(
                f"<tr><td>{esc(item.component_name)}</td>"
                f'<td style="text-align: right;">{esc(format_currency(item.selling_rate, quotation.currency))}</td></tr>'
                for item in quotation.items
            )
            summary = (
                '<table style="width: 100%; border-collapse: collapse;">'
                "<thead><tr><th style=\"text-align: left;\">Description</th>"
                '<th style="text-align: right;">Amount</th></tr></thead>'
                f"<tbody>{rows}<tr><td><strong>Total</strong></td>"
                f'<td style="text-align: right;"><strong>{total}</strong></td></tr></tbody></table>'
            )
        else:
            summary = f'<p style="text-align: center;">Total Penawaran</p><p style="text-align: center;"><strong>{total}</strong></p>'

        return (
            "<!DOCTYPE html><html><body>"
            f"<h1>{company}</h1><p>Quotation {esc(quotation.quotation_number)}</p>"
            f"<p>Yth. {customer},</p>"
            f"<p>Terima kasih atas kepercayaan Anda kepada {company}. Dengan senang hati kami sampaikan penawaran "
            f"harga untuk layanan {service_info}{route_info}.</p>"
            f"<p><strong>No. Quotation:</strong> {esc(quotation.quotation_number)}</p>"
            f"<p><strong>Urutan:</strong> {esc(_customer_sequence(quotation))}</p>"
            f"<p><strong>Tanggal:</strong> {esc(format_date(quotation.created_at))}</p>"
            f"{reference}{summary}"
            f"<p><strong>Validitas Penawaran:</strong> Penawaran ini berlaku selama "
            f"<strong>{quotation.validity_days} hari</strong> sejak tanggal penerbitan "
            f"(hingga {esc(format_date(quotation.valid_until))}).</p>"
            f'<p><a href="{esc(validation_url, quote=True)}">Lihat Quotation Online</a></p>'
            "<p>Jika Bapak/Ibu memiliki pertanyaan atau membutuhkan informasi tambahan, silakan menghubungi kami.</p>"
            f"<p>Hormat kami,<br/><strong>{esc(sender.name)}</strong><br/>Sales &amp; Commercial Executive<br/>"
            f"{company}<br/>Email: {esc(sender.email)}<br/>Tel: {esc(self.settings.company_phone)}</p>"
            f"<hr><p>{esc(self.settings.company_legal_name)}<br/>{esc(self.settings.company_address)}</p>"
            "</body></html>"
        )
