from dsinspect.cli.dsinspect import main

if __name__ == "__main__":
    main()
