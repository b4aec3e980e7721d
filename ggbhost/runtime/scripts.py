"""
Page-side snippets evaluated inside the hosting browser.

Each constant is a JavaScript function expression handed to
``page.evaluate(expression, arg)``.  Keeping them in one place lets the test
doubles dispatch on the exact same strings the instance sends.
"""

from __future__ import annotations

READY_SIGNAL = "() => window.ggbReady === true && !!window.ggbApplet"

FUNCTIONAL_PROBE = """
() => {
  const api = window.ggbApplet;
  if (!api) {
    return { ok: false, reason: "applet missing" };
  }
  if (typeof api.evalCommand !== "function" || typeof api.exists !== "function") {
    return { ok: false, reason: "scripting entry points not wired" };
  }
  try {
    const accepted = api.evalCommand("ggbhostProbe = 1");
    const seen = api.exists("ggbhostProbe");
    if (typeof api.deleteObject === "function") {
      api.deleteObject("ggbhostProbe");
    }
    if (!accepted) {
      return { ok: false, reason: "probe command rejected" };
    }
    return { ok: true, exists: !!seen };
  } catch (e) {
    return { ok: false, reason: String((e && e.message) || e) };
  }
}
"""

DEBUG_STATE = """
() => ({
  ggbReady: window.ggbReady,
  appletExists: !!window.ggbApplet,
  evalCommandType: window.ggbApplet ? typeof window.ggbApplet.evalCommand : "undefined",
  location: window.location.href,
  title: document.title
})
"""

EVAL_COMMAND = """
(cmd) => {
  const api = window.ggbApplet;
  if (!api || typeof api.evalCommand !== "function") {
    return { success: false, error: "Engine scripting surface is not available" };
  }
  try {
    const accepted = api.evalCommand(cmd);
    if (accepted) {
      return { success: true, result: accepted };
    }
    return { success: false, error: "Command rejected by engine" };
  } catch (e) {
    return { success: false, error: String((e && e.message) || e || "Unknown error") };
  }
}
"""

EVAL_COMMAND_GET_LABELS = """
(cmd) => {
  const api = window.ggbApplet;
  const raw = api.evalCommandGetLabels(cmd);
  if (raw === null || raw === undefined) {
    return null;
  }
  return String(raw).split(",").map((label) => label.trim()).filter((label) => label.length > 0);
}
"""

CALL_METHOD = """
([method, args]) => {
  const api = window.ggbApplet;
  if (!api || typeof api[method] !== "function") {
    throw new Error("Engine method " + method + " is not available");
  }
  const value = api[method](...args);
  return value === undefined ? null : value;
}
"""

OBJECT_INFO = """
(name) => {
  const api = window.ggbApplet;
  if (!api.exists(name)) {
    return null;
  }
  return {
    name: name,
    type: api.getObjectType(name),
    value: api.getValue(name),
    valueString: api.getValueString(name),
    visible: api.getVisible(name),
    defined: api.isDefined(name),
    x: api.getXcoord(name),
    y: api.getYcoord(name),
    z: api.getZcoord(name),
    color: api.getColor(name)
  };
}
"""

CANVAS_SIZE = """
(fallback) => {
  const api = window.ggbApplet;
  let options = null;
  try {
    options = typeof api.getGraphicsOptions === "function" ? api.getGraphicsOptions() : null;
  } catch (e) {
    options = null;
  }
  const width = options && options.width ? options.width : fallback[0];
  const height = options && options.height ? options.height : fallback[1];
  return [width, height];
}
"""

# Native export signatures differ between engine builds; try the richest first.
EXPORT_RASTER = """
({ scale, transparent, dpi }) => {
  const api = window.ggbApplet;
  const attempts = [
    () => api.getPNGBase64(scale, transparent, dpi),
    () => api.getPNGBase64(scale, transparent),
    () => api.getPNGBase64(scale),
    () => api.getPNGBase64(1)
  ];
  const errors = [];
  for (const attempt of attempts) {
    try {
      const result = attempt();
      if (typeof result === "string" && result.length > 0) {
        return { data: result, attempts: errors.length + 1 };
      }
      errors.push("empty result");
    } catch (e) {
      errors.push(String((e && e.message) || e));
    }
  }
  return { data: null, errors: errors };
}
"""

EXPORT_VECTOR = """
() => {
  const api = window.ggbApplet;
  const attempts = [
    () => api.exportSVG(),
    () => api.exportSVG("construction"),
    () => (typeof api.getSVG === "function" ? api.getSVG() : null)
  ];
  for (const attempt of attempts) {
    try {
      const result = attempt();
      if (typeof result === "string" && result.length > 0) {
        return result;
      }
    } catch (e) {
      // next signature
    }
  }
  return null;
}
"""

__all__ = [
    "CALL_METHOD",
    "CANVAS_SIZE",
    "DEBUG_STATE",
    "EVAL_COMMAND",
    "EVAL_COMMAND_GET_LABELS",
    "EXPORT_RASTER",
    "EXPORT_VECTOR",
    "FUNCTIONAL_PROBE",
    "OBJECT_INFO",
    "READY_SIGNAL",
]
