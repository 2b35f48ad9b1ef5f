"""Search clusters Cookbooks"""
__title__ = __doc__
