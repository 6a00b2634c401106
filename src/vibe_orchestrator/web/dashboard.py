"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>vibe</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --muted: #8b949e; --dim: #6e7681;
    --active: #3fb950; --creating: #58a6ff; --paused: #d29922;
    --completed: #a371f7; --failed: #f85149; --archived: #6e7681;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 960px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: baseline;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header .meta { font-size: 13px; color: var(--muted); }
  code { background: var(--bg); padding: 1px 5px; border-radius: 3px; font-size: 12px; }

  .counts { display: flex; gap: 16px; margin-bottom: 20px; font-size: 14px; flex-wrap: wrap; }
  .session { background: var(--surface); border: 1px solid var(--border);
             border-radius: 8px; padding: 12px 16px; margin-bottom: 8px; }
  .session-header { display: flex; align-items: center; gap: 10px; }
  .session-name { font-weight: 600; font-size: 14px; }
  .session-details { margin-top: 6px; font-size: 13px; color: var(--muted); }
  .agent { margin: 6px 0 0 24px; font-size: 13px; display: flex; gap: 8px; align-items: center; }
  .agent .summary { color: var(--dim); overflow: hidden; text-overflow: ellipsis; white-space: nowrap; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px;
           background: rgba(139,148,158,0.15); color: var(--muted); }
  .badge.active, .badge.running { color: var(--active); }
  .badge.creating, .badge.queued { color: var(--creating); }
  .badge.paused { color: var(--paused); }
  .badge.completed, .badge.ingested { color: var(--completed); }
  .badge.failed { color: var(--failed); }
  .badge.archived { color: var(--archived); }
  .empty { text-align: center; padding: 48px; color: var(--muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1 id="title">vibe</h1>
    <span class="meta" id="meta"></span>
  </header>
  <div id="content"><div class="empty">Loading...</div></div>
</div>

<script>
async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

function stateOf(status) {
  return status.split(':')[0].toLowerCase();
}

async function load() {
  const content = document.getElementById('content');
  const status = await fetchJSON('/api/status');
  if (!status) {
    content.innerHTML = '<div class="empty"><h3>Workspace not available</h3><p>Run <code>vibe init</code> first.</p></div>';
    return;
  }
  document.getElementById('title').textContent = `vibe: ${status.workspace}`;
  document.getElementById('meta').textContent =
    `${status.kind} · tmux ${status.tmux_session} · ${status.running_agents} running agent(s)`;

  let html = '<div class="counts">';
  for (const [state, n] of Object.entries(status.session_counts)) {
    html += `<span><span class="badge ${state.toLowerCase()}">${esc(state)}</span> ${n}</span>`;
  }
  html += '</div>';

  if (status.sessions.length === 0) {
    html += '<div class="empty"><h3>No sessions</h3><p>Create one with <code>vibe new &lt;name&gt;</code></p></div>';
  }
  const details = await Promise.all(
    status.sessions.map(s => fetchJSON(`/api/sessions/${encodeURIComponent(s.name)}`))
  );
  for (const s of details) {
    if (!s) continue;
    html += renderSession(s);
  }
  content.innerHTML = html;
}

function renderSession(s) {
  let agents = '';
  for (const a of s.agents) {
    agents += `<div class="agent">
      <span class="badge ${stateOf(a.status)}">${esc(a.status)}</span>
      <code>${esc(a.id.slice(0, 8))}</code> ${esc(a.name)} (${esc(a.mode)})
      ${a.summary ? `<span class="summary">${esc(a.summary)}</span>` : ''}
    </div>`;
  }
  return `<div class="session">
    <div class="session-header">
      <span class="badge ${stateOf(s.status)}">${esc(s.status)}</span>
      <span class="session-name">${esc(s.name)}${s.is_main ? ' (main)' : ''}</span>
      <code>${esc(s.branch)}</code>
    </div>
    <div class="session-details">Worktree: <code>${esc(s.worktree_path)}</code></div>
    ${agents}
  </div>`;
}

function esc(s) {
  if (!s) return '';
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

load();
setInterval(load, 5000);
</script>
</body>
</html>"""
