"""Engine services.

- conditions.py (condition tree evaluation)
- templates.py (alert description templates)
- rule_store.py (active rule snapshot + rule writes)
- lifecycle.py (check/dedup/resolve alerts)
- actions.py (action registry + dispatch)
- notifications.py (notification collaborator)
"""

# Import side-effects are intentionally avoided here; modules are imported by callers as needed.
