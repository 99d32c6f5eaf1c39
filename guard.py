# guard.py
# -----------------------------------------------------------------------------
# Soft lockdown while a session is Active.
# - beforeunload: warn only (browsers never allow a hard block)
# - contextmenu + reload combos (F5, Ctrl/Cmd+R, Ctrl/Cmd+Shift+R): suppressed
# - every interception raises a transient toast
# Known limitation: this is friction against accidental exits, not a security
# boundary. Devtools, closing the tab or killing the browser all bypass it.
# -----------------------------------------------------------------------------
import json
from typing import Callable, Optional

from markupsafe import Markup

DEFAULT_WARNING = "The assessment is in progress. Leaving this page will not pause the timer."

BEFORE_UNLOAD = "beforeunload"
CONTEXT_MENU = "contextmenu"
KEYDOWN = "keydown"
GUARDED_EVENTS = (BEFORE_UNLOAD, CONTEXT_MENU, KEYDOWN)

RELOAD_COMBOS = {"f5", "ctrl+r", "meta+r", "ctrl+shift+r", "meta+shift+r", "ctrl+f5"}


def key_combo(key: Optional[str], ctrl: bool = False, meta: bool = False, shift: bool = False) -> str:
    parts = []
    if ctrl:
        parts.append("ctrl")
    if meta:
        parts.append("meta")
    if shift:
        parts.append("shift")
    parts.append(str(key or "").strip().lower())
    return "+".join(parts)


class NavigationGuard:
    def __init__(self, on_warning: Optional[Callable[[str], None]] = None, message: str = DEFAULT_WARNING,
                 enabled: bool = True):
        self.on_warning = on_warning
        self.message = message
        self.enabled = enabled
        self._installed = False
        self.interceptions = 0

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> None:
        if not self.enabled or self._installed:
            return
        self._installed = True

    def remove(self) -> None:
        if not self._installed:
            return
        self._installed = False
        print("[guard] removed", flush=True)

    def intercept(self, event: str, key: Optional[str] = None, ctrl: bool = False,
                  meta: bool = False, shift: bool = False) -> Optional[str]:
        """Return the toast text when the event is intercepted, None when it passes through."""
        if not self._installed:
            return None
        event = (event or "").lower()
        if event == KEYDOWN:
            if key_combo(key, ctrl=ctrl, meta=meta, shift=shift) not in RELOAD_COMBOS:
                return None
        elif event not in (BEFORE_UNLOAD, CONTEXT_MENU):
            return None
        self.interceptions += 1
        if self.on_warning:
            try:
                self.on_warning(self.message)
            except Exception as e:
                print(f"[guard] warning callback failed: {e}", flush=True)
        return self.message

    def client_config(self, report_url: Optional[str] = None) -> dict:
        return {
            "message": self.message,
            "reloadCombos": sorted(RELOAD_COMBOS),
            "reportUrl": report_url,
        }

    def client_script(self, report_url: Optional[str] = None) -> Markup:
        """Browser-side listeners; empty while the guard is not installed."""
        if not self._installed:
            return Markup("")
        cfg = json.dumps(self.client_config(report_url)).replace("</", "<\\/")
        return Markup(_CLIENT_SCRIPT.replace("__GUARD_CFG__", cfg))


_CLIENT_SCRIPT = """
<script>
(function(){
  const CFG = __GUARD_CFG__;
  let active = true;
  function toast(msg){
    let t = document.getElementById('guard-toast');
    if(!t){
      t = document.createElement('div'); t.id = 'guard-toast';
      t.style.cssText = 'position:fixed;bottom:18px;left:50%;transform:translateX(-50%);background:#111827;color:#fff;padding:10px 14px;border-radius:8px;font-size:14px;z-index:9999';
      document.body.appendChild(t);
    }
    t.textContent = msg; t.style.display = '';
    clearTimeout(t._h); t._h = setTimeout(function(){ t.style.display = 'none'; }, 2500);
  }
  function report(event, e){
    if(!CFG.reportUrl) return;
    const body = {event: event, key: e && e.key || null, ctrl: !!(e && e.ctrlKey), meta: !!(e && e.metaKey), shift: !!(e && e.shiftKey)};
    try{ navigator.sendBeacon ? navigator.sendBeacon(CFG.reportUrl, new Blob([JSON.stringify(body)], {type:'application/json'}))
                              : fetch(CFG.reportUrl, {method:'POST', headers:{'Content-Type':'application/json'}, body: JSON.stringify(body), keepalive: true}); }catch(_){}
  }
  function combo(e){
    const p = [];
    if(e.ctrlKey) p.push('ctrl'); if(e.metaKey) p.push('meta'); if(e.shiftKey) p.push('shift');
    p.push(String(e.key || '').toLowerCase());
    return p.join('+');
  }
  function onUnload(e){ if(!active) return; report('beforeunload', e); e.preventDefault(); e.returnValue = CFG.message; return CFG.message; }
  function onMenu(e){ if(!active) return; e.preventDefault(); report('contextmenu', e); toast(CFG.message); }
  function onKey(e){
    if(!active) return;
    if(CFG.reloadCombos.indexOf(combo(e)) === -1) return;
    e.preventDefault(); report('keydown', e); toast(CFG.message);
  }
  window.addEventListener('beforeunload', onUnload);
  document.addEventListener('contextmenu', onMenu);
  document.addEventListener('keydown', onKey);
  window.assessmentGuard = {
    remove: function(){
      active = false;
      window.removeEventListener('beforeunload', onUnload);
      document.removeEventListener('contextmenu', onMenu);
      document.removeEventListener('keydown', onKey);
    }
  };
})();
</script>
"""


__all__ = ["DEFAULT_WARNING", "GUARDED_EVENTS", "RELOAD_COMBOS", "key_combo", "NavigationGuard"]
