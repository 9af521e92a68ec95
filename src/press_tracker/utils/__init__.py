"""Utilities package for press-tracker."""
