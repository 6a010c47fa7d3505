import json
import os
import plotly.graph_objects as go
import pandas as pd

def plot_loss_history(history: pd.DataFrame, description: str = 'MNIST recognizer') -> go.Figure:
    """
    Takes the DataFrame returned by Network.train(), with columns ['Iteration', 'Loss'],
    and returns a plotly figure of the loss per training batch.
    """
    fig = go.Figure(layout={
        'title': f'Training Loss of {description}',
        'template': 'seaborn',
        'height': 600,
        'xaxis': {'title': 'Training Batch'},
        'yaxis': {'title': 'Loss', 'type': 'log'},
    })
    fig.add_trace(go.Scatter(
        x=history['Iteration'],
        y=history['Loss'],
        mode='lines+markers',
        name='Loss',
    ))
    return fig

def save_fig_with_cfg(path: str, fig: go.Figure, config: dict) -> None:
    """
    Save a plotly figure as a standalone HTML file, with the run configuration embedded as a JSON comment.
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    html = fig.to_html(full_html=True, include_plotlyjs='cdn')
    metadata = json.dumps(config, indent=4, default=str)
    with open(path, 'w') as file:
        file.write(f"<!--\n{metadata}\n-->\n")
        file.write(html)
