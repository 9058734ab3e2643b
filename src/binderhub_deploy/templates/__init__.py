"""Helm values templates for the BinderHub chart."""
