from igadget import IG

ig = IG(path="ig", image="ghcr.io/inspektor-gadget/gadget/trace_tcpconnect:latest")


if __name__ == "__main__":
    ig.remove()
