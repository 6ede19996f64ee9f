"""PDF engine: lays out a CanonicalDocument with reportlab."""
from __future__ import annotations

import logging

from contractdesk.services.renderer import CanonicalDocument

log = logging.getLogger("uvicorn.error")


class PdfRenderError(Exception):
    pass


def _escape_for_reportlab(s: str) -> str:
    """Escape text for ReportLab Paragraph (XML-like markup)."""
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def document_to_pdf(document: CanonicalDocument, signature_images: dict[str, bytes] | None = None) -> bytes:
    """Render the document as a justified PDF. signature_images maps a block's image_path to image bytes;
    images that are missing or unreadable fall back to the typed signer name."""
    from io import BytesIO
    from reportlab.lib.pagesizes import letter
    from reportlab.lib.styles import getSampleStyleSheet
    from reportlab.lib.enums import TA_JUSTIFY
    from reportlab.lib.units import inch
    from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image, KeepTogether

    images = signature_images or {}
    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=document.title,
    )
    styles = getSampleStyleSheet()
    title_style = styles["Title"]
    heading_style = styles["Heading3"]
    body_style = styles["Normal"].clone("JustifiedBody", alignment=TA_JUSTIFY, spaceAfter=6)

    story = [
        Paragraph(_escape_for_reportlab(document.title), title_style),
        Spacer(1, 0.2 * inch),
        Paragraph(_escape_for_reportlab(document.preamble), body_style),
        Spacer(1, 0.12 * inch),
    ]

    for section in document.sections:
        story.append(Paragraph(_escape_for_reportlab(f"{section.number}. {section.heading}"), heading_style))
        for line in section.paragraphs:
            story.append(Paragraph(_escape_for_reportlab(line), body_style))
        story.append(Spacer(1, 0.12 * inch))

    for block in document.signature_blocks:
        parts = [Paragraph(f"<b>{_escape_for_reportlab(block.label)}</b>", body_style)]
        data = images.get(block.image_path) if block.image_path else None
        if data:
            try:
                img = Image(BytesIO(data))
                ratio = min(2.0 * inch / img.imageWidth, 0.8 * inch / img.imageHeight)
                img.drawWidth = img.imageWidth * ratio
                img.drawHeight = img.imageHeight * ratio
                img.hAlign = "LEFT"
                parts.append(img)
            except Exception as e:
                log.warning("PDF: skipping unreadable signature image %s: %s", block.image_path, e)
        if block.signer_name is None:
            parts.append(Paragraph("________________________", body_style))
            parts.append(Paragraph("Date: ________", body_style))
        else:
            parts.append(Paragraph(f"Signed by: {_escape_for_reportlab(block.signer_name)}", body_style))
            parts.append(Paragraph(f"Date: {_escape_for_reportlab(block.signed_on or '')}", body_style))
        parts.append(Spacer(1, 0.2 * inch))
        story.append(KeepTogether(parts))

    try:
        doc.build(story)
    except Exception as e:
        raise PdfRenderError(f"PDF generation failed: {e}") from e
    return buf.getvalue()
