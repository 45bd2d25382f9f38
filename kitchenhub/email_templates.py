"""
MJML Email Templates
Storage overstay notifications, rendered with MJML for cross-client compatibility
"""

from typing import Optional

from .config import FRONTEND_URL

# App theme colors - Amber/Slate color scheme
THEME = {
    "primary": "#d97706",
    "primary_dark": "#b45309",
    "primary_light": "#fef3c7",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "success": "#16a34a",
    "warning": "#f59e0b",
    "danger": "#ef4444",
}

BRAND_NAME = "KitchenHub"


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button href="{cta_url}" background-color="{THEME['primary']}" color="#ffffff"
              font-weight="600" border-radius="8px" padding="18px 40px" font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="28px 40px 0 40px">
          <mj-column>
            <mj-text font-size="20px" font-weight="700" color="{THEME['primary_dark']}" padding="0 0 20px 0">
              {BRAND_NAME}
            </mj-text>
            <mj-divider border-color="{THEME['border']}" border-width="1px" padding="0 0 28px 0" />
          </mj-column>
        </mj-section>

        <mj-section background-color="#ffffff" padding="0 40px 40px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" line-height="1.3" padding="0 0 16px 0">
              {title}
            </mj-text>
            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="28px 20px">
          <mj-column>
            <mj-text align="center" font-size="12px" color="#94a3b8" padding="0">
              You're receiving this because you have a storage booking or kitchen on {BRAND_NAME}.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def _summary_table(rows: list[tuple[str, str]]) -> str:
    cells = "".join(
        f"""
        <tr>
          <td style="padding: 6px 0; color: {THEME['text_muted']};">{label}</td>
          <td style="padding: 6px 0; text-align: right; font-weight: 600;">{value}</td>
        </tr>"""
        for label, value in rows
    )
    return f"""
    <mj-table padding="8px 0 16px 0" font-size="15px" color="{THEME['text_secondary']}">
      {cells}
    </mj-table>
    """


def overstay_detected_template(
    recipient_name: str,
    storage_name: str,
    kitchen_name: str,
    booking_end_date: str,
    grace_period_ends_at: str,
    daily_penalty: str,
    policy_text: Optional[str] = None,
) -> str:
    """Chef: storage booking ended but items were not checked out"""
    policy = ""
    if policy_text:
        policy = f"""
        <mj-text font-size="14px" color="{THEME['text_muted']}">
          Kitchen policy: {policy_text}
        </mj-text>
        """
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      Your storage booking for <strong>{storage_name}</strong> at {kitchen_name} ended on
      {booking_end_date}, but it hasn't been checked out yet.
    </mj-text>
    {_summary_table([("Grace period ends", grace_period_ends_at), ("Penalty per day after that", daily_penalty)])}
    <mj-text>
      Please extend your booking or remove your items before the grace period ends to avoid
      overstay penalties.
    </mj-text>
    {policy}
    """
    return get_base_template(
        title="Your storage booking has ended",
        preview_text=f"Grace period ends {grace_period_ends_at}",
        content_sections=content,
        cta_url=f"{FRONTEND_URL}/chef/bookings",
        cta_label="Manage Booking",
    )


def overstay_pending_review_template(
    recipient_name: str,
    chef_name: str,
    storage_name: str,
    kitchen_name: str,
    days_overdue: int,
    calculated_penalty: str,
    overstay_id: int,
) -> str:
    """Manager: grace period exceeded, penalty awaits a decision"""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      {chef_name}'s storage booking for <strong>{storage_name}</strong> at {kitchen_name} is past
      its grace period and needs your review.
    </mj-text>
    {_summary_table([("Days overdue", str(days_overdue)), ("Calculated penalty", calculated_penalty)])}
    <mj-text>
      You can approve the penalty (optionally at a lower amount) or waive it with a reason.
    </mj-text>
    """
    return get_base_template(
        title="Overstay penalty needs review",
        preview_text=f"{chef_name} - {calculated_penalty} pending review",
        content_sections=content,
        cta_url=f"{FRONTEND_URL}/manager/overstays/{overstay_id}",
        cta_label="Review Penalty",
    )


def penalty_charged_template(
    recipient_name: str,
    storage_name: str,
    amount: str,
    reference: str,
) -> str:
    """Chef and manager: penalty collected"""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      The overstay penalty for <strong>{storage_name}</strong> has been charged.
    </mj-text>
    {_summary_table([("Amount charged", amount), ("Reference", reference)])}
    """
    return get_base_template(
        title="Overstay penalty charged",
        preview_text=f"{amount} charged",
        content_sections=content,
    )


def charge_failed_template(
    recipient_name: str,
    chef_name: str,
    storage_name: str,
    amount: str,
    reason: str,
    attempt_count: int,
    overstay_id: int,
) -> str:
    """Manager: charge failed, retry or escalate"""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      We couldn't charge {chef_name} the overstay penalty for <strong>{storage_name}</strong>.
    </mj-text>
    {_summary_table([("Amount", amount), ("Reason", reason), ("Failed attempts", str(attempt_count))])}
    <mj-text>
      You can retry the charge, re-approve a different amount, or resolve the case as escalated.
    </mj-text>
    """
    return get_base_template(
        title="Overstay penalty charge failed",
        preview_text=f"Charge failed: {reason}",
        content_sections=content,
        cta_url=f"{FRONTEND_URL}/manager/overstays/{overstay_id}",
        cta_label="Retry or Escalate",
    )


def penalty_payment_link_template(
    recipient_name: str,
    storage_name: str,
    amount: str,
    payment_link_url: str,
) -> str:
    """Chef: automatic charges failed, pay manually"""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      We were unable to charge your saved payment method for the overstay penalty on
      <strong>{storage_name}</strong>.
    </mj-text>
    {_summary_table([("Amount due", amount)])}
    <mj-text>Please complete the payment using the secure link below.</mj-text>
    """
    return get_base_template(
        title="Action required: overstay penalty payment",
        preview_text=f"{amount} due",
        content_sections=content,
        cta_url=payment_link_url,
        cta_label="Pay Now",
    )


def penalty_escalated_ops_template(
    recipient_name: str,
    chef_name: str,
    chef_email: str,
    storage_name: str,
    location_name: str,
    amount: str,
    reason: str,
    attempt_count: int,
    overstay_id: int,
) -> str:
    """Operations: penalty escalated for manual collection"""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      An overstay penalty has been escalated after repeated failed charges.
    </mj-text>
    {_summary_table([
        ("Chef", f"{chef_name} ({chef_email})"),
        ("Storage", storage_name),
        ("Location", location_name),
        ("Amount", amount),
        ("Last failure", reason),
        ("Failed attempts", str(attempt_count)),
    ])}
    """
    return get_base_template(
        title=f"Escalated overstay penalty #{overstay_id}",
        preview_text=f"{amount} requires manual collection",
        content_sections=content,
        cta_url=f"{FRONTEND_URL}/admin/overstays",
        cta_label="View Escalations",
    )


def charge_unreconciled_ops_template(
    recipient_name: str,
    chef_name: str,
    chef_email: str,
    storage_name: str,
    location_name: str,
    amount: str,
    reference: str,
    status: str,
    reason: str,
    overstay_id: int,
) -> str:
    """Operations: payment confirmed after the overstay left charge_pending"""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text color="{THEME['danger']}">
      A penalty payment was confirmed after the overstay had already moved to
      <strong>{status}</strong>. Check it against the chef's account before any refund
      or further collection.
    </mj-text>
    {_summary_table([
        ("Chef", f"{chef_name} ({chef_email})"),
        ("Storage", storage_name),
        ("Location", location_name),
        ("Amount", amount),
        ("Payment reference", reference),
    ])}
    """
    return get_base_template(
        title=f"Unreconciled overstay payment #{overstay_id}",
        preview_text=reason,
        content_sections=content,
        cta_url=f"{FRONTEND_URL}/admin/overstays",
        cta_label="Review Overstay",
    )


def overstay_closed_template(
    recipient_name: str,
    storage_name: str,
    outcome: str,
    notes: Optional[str] = None,
) -> str:
    """Chef: matter closed (waived or resolved)"""
    extra = f"<mj-text color=\"{THEME['text_muted']}\">{notes}</mj-text>" if notes else ""
    content = f"""
    <mj-text>Hi {recipient_name},</mj-text>
    <mj-text>
      The overstay on <strong>{storage_name}</strong> has been closed: {outcome}.
      No further action is needed.
    </mj-text>
    {extra}
    """
    return get_base_template(
        title="Overstay matter closed",
        preview_text=f"{storage_name}: {outcome}",
        content_sections=content,
    )


# template_id -> (subject, builder)
OVERSTAY_TEMPLATES = {
    "overstay_detected": ("Your storage booking has ended - {storage_name}", overstay_detected_template),
    "overstay_pending_review": ("Overstay penalty needs review - {storage_name}", overstay_pending_review_template),
    "penalty_charged": ("Overstay penalty charged - {amount}", penalty_charged_template),
    "charge_failed": ("Overstay penalty charge failed - {chef_name}", charge_failed_template),
    "penalty_payment_link": ("Action required: overstay penalty payment", penalty_payment_link_template),
    "penalty_escalated_ops": ("Escalated overstay penalty #{overstay_id}", penalty_escalated_ops_template),
    "charge_unreconciled_ops": (
        "Unreconciled overstay payment #{overstay_id}",
        charge_unreconciled_ops_template,
    ),
    "overstay_closed": ("Overstay matter closed - {storage_name}", overstay_closed_template),
}
