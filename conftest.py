"""Import the real packages before pytest's importlib mode loads the per-component
conftests; otherwise it registers the same-named source directories
(``portal_api/``, ``portal_cli/``) as empty namespace parents."""

import billing_engine  # noqa: F401
import portal_api  # noqa: F401
import portal_cli  # noqa: F401
