from mcp_toolbox import main

if __name__ == "__main__":
    main()
