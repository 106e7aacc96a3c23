from __future__ import annotations

from html import escape


AUTOMATED_NOTICE = "This is an automated message. Please do not reply."


def build_footer_text(
    signature: str,
    notice: str = AUTOMATED_NOTICE,
    include_separator: bool = True,
) -> str:
    lines = []
    if include_separator:
        lines.append("---")
    for line in (signature or "").splitlines():
        if line.strip():
            lines.append(line.rstrip())
    if notice:
        lines.append(notice)
    return "\n".join(lines)


def build_footer_html(signature: str, notice: str = AUTOMATED_NOTICE) -> str:
    signature_lines = [escape(line.rstrip()) for line in (signature or "").splitlines() if line.strip()]

    parts = [
        '<div style="margin-top: 24px; padding-top: 12px; border-top: 1px solid #ddd; font-size: 12px; color: #666;">'
    ]
    if signature_lines:
        parts.append(f"<p>{'<br>'.join(signature_lines)}</p>")
    if notice:
        parts.append(f"<p>{escape(notice)}</p>")
    parts.append("</div>")
    return "\n".join(parts)
