"""Profit allocation between the company and its contractors."""
