"""Pharmacy ordering service"""
