"""Templates and rendering for billing notification emails."""

from .renderer import render_subject_body, template_exists

__all__ = ["render_subject_body", "template_exists"]
