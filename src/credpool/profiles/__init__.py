"""Saved credential profiles and the cyclic profile switcher."""
