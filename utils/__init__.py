"""Mirror Autofill - shared utilities"""
