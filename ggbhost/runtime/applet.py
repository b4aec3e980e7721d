"""
HTML host page for the engine applet.
"""

from __future__ import annotations

import json
from typing import Optional

from ..config import InstanceConfig

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8" />
  <title>ggbhost applet</title>
  {bundle_tag}
</head>
<body style="margin:0">
  <div id="ggb-element"></div>
  <script>
    window.ggbReady = false;
    window.ggbApplet = null;

    window.ggbOnInit = function (name) {{
      window.ggbApplet = window.ggbApplet || window[name];
      window.ggbReady = true;
    }};

    const parameters = {parameters};
    parameters.appletOnLoad = function (api) {{
      window.ggbApplet = api;
      if (typeof api.enableCAS === "function") {{
        api.enableCAS(true);
      }}
      window.ggbReady = true;
    }};

    new GGBApplet(parameters, true).inject("ggb-element");
  </script>
</body>
</html>
"""


def applet_parameters(config: InstanceConfig) -> dict:
    return {
        "appName": config.app_name,
        "width": int(config.width),
        "height": int(config.height),
        "showMenuBar": bool(config.show_menu_bar),
        "showToolBar": bool(config.show_tool_bar),
        "showAlgebraInput": bool(config.show_algebra_input),
        "showResetIcon": bool(config.show_reset_icon),
        "enableRightClick": bool(config.enable_right_click),
        "enableLabelDrags": True,
        "enableShiftDragZoom": True,
        "enableCAS": True,
        "enable3D": False,
        "language": config.language,
        "useBrowserForJS": False,
        "preventFocus": True,
    }


def render_applet_html(config: InstanceConfig, bundle_source: Optional[str] = None) -> str:
    """
    Build the host page.

    ``bundle_source`` is the inlined deploy script; without it the page
    references ``config.bundle_url`` directly.
    """

    if bundle_source:
        # keep a literal "</script>" inside the bundle from closing the tag early
        inline = bundle_source.replace("</script", "<\\/script")
        bundle_tag = f"<script>{inline}</script>"
    else:
        bundle_tag = f'<script src="{config.bundle_url}"></script>'
    return _PAGE_TEMPLATE.format(
        bundle_tag=bundle_tag,
        parameters=json.dumps(applet_parameters(config)),
    )
