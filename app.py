import streamlit as st
import streamlit.components.v1 as components
import circuit_core
import re

st.set_page_config(page_title="Circuit Pattern Generator", layout="wide")
st.title("Circuit Pattern Generator")

with st.sidebar:
    st.header("Canvas")
    canvas_width = st.slider("Canvas Width", 200, 2000, 800, 10)
    canvas_height = st.slider("Canvas Height", 200, 2000, 600, 10)

    st.header("Region")
    region_kind = st.selectbox("Shape", ['rectangle', 'ellipse', 'text'], index=0)
    if region_kind == 'rectangle':
        margin = st.slider("Margin", 0, 200, 20, 5)
        shapes = [{'type': 'rectangle', 'x': margin, 'y': margin,
                   'width': canvas_width - 2 * margin,
                   'height': canvas_height - 2 * margin}]
    elif region_kind == 'ellipse':
        rx = st.slider("Radius X", 10, canvas_width // 2, canvas_width // 3, 5)
        ry = st.slider("Radius Y", 10, canvas_height // 2, canvas_height // 3, 5)
        shapes = [{'type': 'ellipse', 'cx': canvas_width / 2, 'cy': canvas_height / 2,
                   'rx': rx, 'ry': ry}]
    else:
        text = st.text_input("Text", "PCB")
        font_size = st.slider("Font Size", 20, 600, 300, 10)
        shapes = [{'type': 'text', 'text': text, 'x': canvas_width / 2,
                   'y': canvas_height / 2, 'font_size': font_size}]

    st.header("Pattern Settings")
    style = st.selectbox("Style", ['organic', 'grid'], index=0)
    density = st.slider("Density (spacing)", 5, 100, 20, 1,
                        help="Lower = more candidates per unit area")
    line_length_min, line_length_max = st.slider("Line Length", 5, 400, (20, 150), 5)
    line_thickness = st.slider("Line Thickness", 1, 10, 2, 1)
    circle_radius = st.slider("Pad Radius", 1, 20, 4, 1)
    pattern_scale = st.slider("Pattern Scale", 0.25, 4.0, 1.0, 0.25)

    st.header("Colors")
    line_color = st.color_picker("Line Color", "#00ff00")
    gradient_type = st.selectbox("Gradient", ['none', 'linear', 'radial'], index=0)
    gradient_color = line_color
    if gradient_type != 'none':
        gradient_color = st.color_picker("Gradient Color", "#0066ff")
    transparent_bg = st.checkbox("Transparent Background", value=False)
    bg_color = st.color_picker("Background", "#000000")

    st.header("Randomness")
    use_seed = st.checkbox("Fixed Seed", value=False)
    seed = st.number_input("Seed", 0, 2**31 - 1, 42) if use_seed else None

    if st.button("Generate Pattern", type="primary"):
        st.session_state.pop('pattern', None)

options = {
    'density': density,
    'line_length_min': line_length_min,
    'line_length_max': line_length_max,
    'line_thickness': line_thickness,
    'circle_radius': circle_radius,
    'style': style,
    'line_color': line_color,
    'gradient_type': gradient_type,
    'gradient_color': gradient_color,
    'pattern_scale': pattern_scale,
    'seed': seed,
}

# Generate pattern if needed
current_key = (canvas_width, canvas_height, repr(shapes), repr(sorted(options.items())))

if 'pattern' not in st.session_state or st.session_state.get('pattern_key') != current_key:
    place_progress = st.progress(0, text="Placing segments...")

    def placement_update(current, total):
        if current % 50 == 0 or current == total:
            place_progress.progress(current / total,
                                    text="Candidate {} / {}".format(current, total))

    try:
        mask_image = circuit_core.rasterize_shapes(canvas_width, canvas_height, shapes)
        pattern = circuit_core.generate(mask_image, options,
                                        progress_callback=placement_update)
    except circuit_core.PatternError as e:
        pattern = None
        st.session_state.pattern_error = str(e)
    place_progress.empty()
    st.session_state.pattern = pattern
    st.session_state.pattern_key = current_key

pattern = st.session_state.pattern

if pattern:
    if pattern.gradient_type != 'none':
        # Handles move the shared gradient without regenerating the layout
        with st.sidebar:
            st.header("Gradient Handles")
            start, end = circuit_core.gradient_geometry(pattern, canvas_width, canvas_height)
            sx = st.slider("Start X", 0, canvas_width, int(start[0]))
            sy = st.slider("Start Y", 0, canvas_height, int(start[1]))
            ex = st.slider("End X", 0, canvas_width, int(end[0]))
            ey = st.slider("End Y", 0, canvas_height, int(end[1]))
        circuit_core.set_gradient_points(pattern, (sx, sy), (ex, ey))

    background = None if transparent_bg else bg_color
    svg_string = circuit_core.export_svg(pattern, canvas_width, canvas_height,
                                         background=background)

    # Make SVG responsive for display
    display_svg = re.sub(r'width="\d+"', 'width="100%"', svg_string, count=1)
    display_svg = re.sub(r'height="\d+"', 'height="100%"', display_svg, count=1)

    html_content = f'''
    <div style="background:#f0f0f0; height:100%; display:flex; align-items:center;
                justify-content:center; overflow:auto; padding:20px; box-sizing:border-box;">
        <div style="background:white; padding:10px; box-shadow: 0 2px 8px rgba(0,0,0,0.1);
                    width:100%; aspect-ratio:{canvas_width}/{canvas_height};">
            {display_svg}
        </div>
    </div>
    '''
    components.html(html_content, height=700, scrolling=True)

    stats = pattern.stats
    st.caption("{} segments, {} pads, {} forks ({} candidates, {} inside region)".format(
        stats.get('placed', 0), stats.get('pads', 0), stats.get('forks', 0),
        stats.get('candidates', 0), stats.get('inside', 0)))

    st.download_button(
        "Download SVG",
        svg_string,
        file_name="circuit-pattern.svg",
        mime="image/svg+xml"
    )
else:
    st.error(st.session_state.get('pattern_error',
                                  "Failed to generate pattern. Click 'Generate Pattern' to try again."))
