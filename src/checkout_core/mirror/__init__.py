"""
Mirror proxies: URL translation, availability probing and best-mirror selection.

A mirror proxy is a relay that fetches ``https://github.com/...`` on the
client's behalf when addressed as ``<mirror>/<original-url>``.
"""
